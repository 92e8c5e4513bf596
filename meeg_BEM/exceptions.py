"""
Error types raised at the boundary of the assembly drivers.
"""


class BEMError(ValueError):
    """Base class for assembly errors."""


class InvalidGeometry(BEMError):
    """Raised when a mesh cannot be used for assembly (degenerate triangles,
    dangling indices, points outside every triangle, ...)."""


class DimensionMismatch(BEMError):
    """Raised when an operator block does not fit in the target matrix or
    right-hand side at the requested offsets."""
