"""
Right-hand sides induced by a current dipole in an infinite homogeneous
medium, integrated over the triangles of one mesh layer.

Values are added to the given vector(s) starting at ``offset``; the
gradient variants fill three vectors, one per component of the dipole
position.
"""
import logging
from typing import Optional, Sequence

import numpy as np

from meeg_BEM.config import AssemblyConfig, resolve_config
from meeg_BEM.exceptions import DimensionMismatch
from meeg_BEM.kernels import (AnalyticDipPot,
                              AnalyticDipPotDer,
                              AnalyticDipPotDerGrad,
                              AnalyticDipPotGrad)
from meeg_BEM.mesh import Mesh
from meeg_BEM.quadrature import Integrator

logger = logging.getLogger(__name__)


def _check_rhs(rhs: np.ndarray, offset: int, count: int) -> None:
    if offset < 0:
        raise DimensionMismatch(f"Offset must be non negative, got {offset}.")
    if len(rhs) < offset + count:
        raise DimensionMismatch(
            f"Right-hand side of length {len(rhs)} cannot hold {count} "
            f"values at offset {offset}.")


def _check_rhs3(rhs: Sequence[np.ndarray], offset: int, count: int) -> None:
    if len(rhs) != 3:
        raise DimensionMismatch("Gradient right-hand sides need 3 vectors, "
                                f"got {len(rhs)}.")
    for vec in rhs:
        _check_rhs(vec, offset, count)


def _integrate_triangles(integ: Integrator,
                         make_kernel,
                         mesh: Mesh) -> np.ndarray:
    """
    Integral of ``make_kernel(triangles)`` over every triangle of the mesh,
    one triangle at a time for adaptive integration (the subdivision is
    decided per triangle) and as one batch otherwise.
    """
    if integ.adaptive:
        return np.array([integ.integrate(make_kernel(t), mesh, t)
                         for t in range(mesh.num_triangles)])
    trgs = np.arange(mesh.num_triangles)
    return integ.integrate(make_kernel(trgs), mesh, trgs)


def _prepare(r0, q, mesh, gauss_order, config):
    config = resolve_config(config, gauss_order)
    r0 = np.asarray(r0, dtype=float).reshape(3)
    q = np.asarray(q, dtype=float).reshape(3)
    mesh.validate()
    integ = config.make_integrator(config.rhs_quadrature)
    return r0, q, integ


def operator_dipole_pot(r0: np.ndarray,
                        q: np.ndarray,
                        mesh: Mesh,
                        rhs: np.ndarray,
                        offset: int,
                        gauss_order: Optional[int] = None,
                        *,
                        config: Optional[AssemblyConfig] = None) -> None:
    """
    Dipole potential against the P0 (per triangle) basis:

        rhs[offset + t] += ∫_T q · (x - r0) / |x - r0|^3 dx

    Args:
        r0 (np.ndarray): Dipole position (3,).
        q (np.ndarray): Dipole moment (3,).
        mesh (Mesh): Layer mesh.
        rhs (np.ndarray): Target vector.
        offset (int): Position of the first triangle in ``rhs``.
        gauss_order (int, optional): Overrides ``config.gauss_order``.
        config (AssemblyConfig, optional): Quadrature policy taken from
            ``rhs_quadrature``.
    """
    r0, q, integ = _prepare(r0, q, mesh, gauss_order, config)
    _check_rhs(rhs, offset, mesh.num_triangles)
    logger.debug("Dipole potential on %r at offset %d", mesh, offset)

    analy = AnalyticDipPot().init(q, r0)
    vals = _integrate_triangles(integ, lambda t: analy, mesh)
    rhs[offset:offset + mesh.num_triangles] += vals


def operator_dipole_pot_der(r0: np.ndarray,
                            q: np.ndarray,
                            mesh: Mesh,
                            rhs: np.ndarray,
                            offset: int,
                            gauss_order: Optional[int] = None,
                            *,
                            config: Optional[AssemblyConfig] = None) -> None:
    """
    Normal derivative of the dipole potential against the P1 (per point)
    basis:

        rhs[offset + p] += Σ_{T ∋ p} ∫_T (n · ∇V) φ_p dx
    """
    r0, q, integ = _prepare(r0, q, mesh, gauss_order, config)
    _check_rhs(rhs, offset, mesh.num_points)
    logger.debug("Dipole potential derivative on %r at offset %d", mesh,
                 offset)

    vals = _integrate_triangles(
        integ, lambda t: AnalyticDipPotDer().init(q, r0, mesh, t), mesh)
    np.add.at(rhs, offset + mesh.triangles.ravel(), vals.ravel())


def operator_dipole_pot_grad(r0: np.ndarray,
                             q: np.ndarray,
                             mesh: Mesh,
                             rhs: Sequence[np.ndarray],
                             offset: int,
                             gauss_order: Optional[int] = None,
                             *,
                             config: Optional[AssemblyConfig] = None) -> None:
    """
    Gradient of :func:`operator_dipole_pot` with respect to the dipole
    position; component k is added to ``rhs[k]``.
    """
    r0, q, integ = _prepare(r0, q, mesh, gauss_order, config)
    _check_rhs3(rhs, offset, mesh.num_triangles)
    logger.debug("Dipole potential gradient on %r at offset %d", mesh,
                 offset)

    analy = AnalyticDipPotGrad().init(q, r0)
    vals = _integrate_triangles(integ, lambda t: analy, mesh)
    for k in range(3):
        rhs[k][offset:offset + mesh.num_triangles] += vals[:, k]


def operator_dipole_pot_der_grad(r0: np.ndarray,
                                 q: np.ndarray,
                                 mesh: Mesh,
                                 rhs: Sequence[np.ndarray],
                                 offset: int,
                                 gauss_order: Optional[int] = None,
                                 *,
                                 config: Optional[AssemblyConfig] = None
                                 ) -> None:
    """
    Gradient of :func:`operator_dipole_pot_der` with respect to the dipole
    position; component k is added to ``rhs[k]``.
    """
    r0, q, integ = _prepare(r0, q, mesh, gauss_order, config)
    _check_rhs3(rhs, offset, mesh.num_points)
    logger.debug("Dipole potential derivative gradient on %r at offset %d",
                 mesh, offset)

    # vals[t, k, i]: component k, basis function of vertex i of t
    vals = _integrate_triangles(
        integ, lambda t: AnalyticDipPotDerGrad().init(q, r0, mesh, t), mesh)
    cols = offset + mesh.triangles.ravel()
    for k in range(3):
        np.add.at(rhs[k], cols, vals[:, k, :].ravel())
