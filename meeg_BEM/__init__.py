"""
Boundary Element Method operators for EEG/MEG forward modeling
"""

__version__ = "0.1.0"
from .config import AssemblyConfig
from .exceptions import BEMError, InvalidGeometry, DimensionMismatch
from .geometry import icosphere_mesh, box_mesh
from .mesh import Mesh
from .storage import Matrix, SymMatrix, scale_block
from .integrators import OperatorIntegrator, p1p0, ferguson
from .matrix_assembly import (operator_s, operator_d, operator_n,
                              operator_s_internal, operator_d_internal,
                              operator_p1p0, operator_ferguson)
from .sources import (operator_dipole_pot, operator_dipole_pot_der,
                      operator_dipole_pot_grad,
                      operator_dipole_pot_der_grad)
from .logging_config import setup_logging

__all__ = ["AssemblyConfig", "Mesh", "Matrix", "SymMatrix", "scale_block",
           "icosphere_mesh", "box_mesh",
           "OperatorIntegrator", "p1p0", "ferguson",
           "operator_s", "operator_d", "operator_n",
           "operator_s_internal", "operator_d_internal",
           "operator_p1p0", "operator_ferguson",
           "operator_dipole_pot", "operator_dipole_pot_der",
           "operator_dipole_pot_grad", "operator_dipole_pot_der_grad",
           "BEMError", "InvalidGeometry", "DimensionMismatch",
           "setup_logging"]
