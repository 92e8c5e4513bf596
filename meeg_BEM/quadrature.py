import warnings
import numpy as np
from scipy import special as sp
from typing import Callable

# ============================================================================
# Gauss-Legendre cache
# ============================================================================

_GAUSS_LEGENDRE_CACHE = {}

_TRIANGLE_RULE_CACHE = {}


def _precompute_common_quadratures():
    """
    Pre-compute the Gauss-Legendre rules for the usual triangle orders at
    module import.
    """
    for n in range(1, 13):
        gauss_legendre_1d(n)

# ============================================================================
# Mapping functions
# ============================================================================

def map_to_physical_triangle_batch(xi_eta: np.ndarray,
                                   p0: np.ndarray,
                                   p1: np.ndarray,
                                   p2: np.ndarray) -> tuple[np.ndarray,
                                                            np.ndarray]:
    """
    Vectorized mapping of reference points onto a batch of triangles.

    y = p0 + xi*(p1 - p0) + eta*(p2 - p0)

    Args:
        xi_eta (np.ndarray): Array of shape (Q, 2) representing the
            quadrature points in the reference triangle.
        p0 (np.ndarray): Array of shape (..., 3), first vertex of each
            triangle.
        p1 (np.ndarray): Array of shape (..., 3), second vertex.
        p2 (np.ndarray): Array of shape (..., 3), third vertex.

    Returns:
        y (np.ndarray): Array of shape (..., Q, 3) representing the
            quadrature points in physical coordinates.
        a2 (np.ndarray): Array of shape (...) representing the Jacobian
            scale (||e1×e2||), i.e. twice the *physical* triangle area.
    """
    e1 = p1 - p0
    e2 = p2 - p0
    xi = xi_eta[:, 0][:, None]
    eta = xi_eta[:, 1][:, None]
    y = p0[..., None, :] + \
        xi * e1[..., None, :] + \
        eta * e2[..., None, :]
    a2 = np.linalg.norm(np.cross(e1, e2), axis=-1)
    return y, a2


def split_triangle(p0: np.ndarray,
                   p1: np.ndarray,
                   p2: np.ndarray) -> list[tuple[np.ndarray,
                                                 np.ndarray,
                                                 np.ndarray]]:
    """
    Split (a batch of) triangles into four children through the edge
    midpoints. Children keep the orientation of the parent.
    """
    m01 = 0.5 * (p0 + p1)
    m12 = 0.5 * (p1 + p2)
    m20 = 0.5 * (p2 + p0)
    return [(p0, m01, m20),
            (m01, p1, m12),
            (m20, m12, p2),
            (m12, m20, m01)]

# ============================================================================
# Standard quadrature rules
# ============================================================================

def gauss_legendre_1d(n: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Compute the Gauss-Legendre quadrature points and weights on [0, 1].

    Results are cached.

    Args:
        n (int): Number of quadrature points.

    Returns:
        points (np.ndarray): Array of shape (n,) representing the quadrature
            points on [0, 1].
        weights (np.ndarray): Array of shape (n,) representing the quadrature
            weights (sum(weights) = 1).
    """
    if n < 1:
        raise ValueError("Number of quadrature points must be at least 1.")

    if n not in _GAUSS_LEGENDRE_CACHE:
        points, weights = sp.roots_legendre(n)
        _GAUSS_LEGENDRE_CACHE[n] = (
            np.asarray(0.5 * (points + 1.0), dtype=np.float64, order='C'),
            np.asarray(0.5 * weights, dtype=np.float64, order='C')
        )

    points, weights = _GAUSS_LEGENDRE_CACHE[n]
    # copies so callers cannot corrupt the cache
    return points.copy(), weights.copy()


def triangle_gauss_rule(order: int = 3) -> tuple[np.ndarray, np.ndarray]:
    """
    Gaussian rule on the reference triangle (0,0), (1,0), (0,1) obtained by
    collapsing an order x order Gauss-Legendre rule on the unit square
    (xi = u(1-v), eta = uv).

    The rule has order**2 points and integrates polynomials of degree
    2*order - 2 exactly.

    Args:
        order (int, optional): Number of Gauss-Legendre points per direction.
            Default is 3.

    Returns:
        quad_points (np.ndarray): Array of shape (order**2, 2).
        quad_weights (np.ndarray): Array of shape (order**2,), summing to
            0.5 (the reference area).
    """
    if order in _TRIANGLE_RULE_CACHE:
        pts, w = _TRIANGLE_RULE_CACHE[order]
        return pts.copy(), w.copy()

    u, wu = gauss_legendre_1d(order)
    v, wv = gauss_legendre_1d(order)

    XI = np.multiply.outer(u, (1.0 - v))
    ETA = np.multiply.outer(u, v)
    w = (np.multiply.outer(wu, wv) * u[:, None]).ravel()

    pts = np.stack([XI.ravel(), ETA.ravel()], axis=1)
    pts = np.asarray(pts, dtype=np.float64, order='C')
    w = np.asarray(w, dtype=np.float64, order='C')

    _TRIANGLE_RULE_CACHE[order] = (pts, w)
    return pts.copy(), w.copy()

# ============================================================================
# Integrators
# ============================================================================

def _weighted_sum(values: np.ndarray,
                  w_phys: np.ndarray,
                  value_ndim: int) -> np.ndarray:
    # quadrature axis sits just before the value axes
    w = w_phys.reshape(w_phys.shape + (1,) * value_ndim)
    return np.sum(values * w, axis=-1 - value_ndim)


class Integrator:
    """
    Fixed order Gaussian integration of a kernel over triangles.

    The kernel is any callable taking points of shape (..., Q, 3) and
    returning values of shape (..., Q) or (..., Q, *value_shape). Its
    ``value_ndim`` attribute (default 0) gives the number of trailing value
    axes. Kernel batch axes broadcast against the triangle batch axes.
    """

    adaptive = False

    def __init__(self, order: int = 3):
        self.set_order(order)

    def set_order(self, order: int) -> None:
        if order < 1:
            raise ValueError("Quadrature order must be at least 1.")
        self.order = order
        self.xi_eta, self.w = triangle_gauss_rule(order)

    def integrate(self,
                  kernel: Callable[[np.ndarray], np.ndarray],
                  mesh,
                  triangles: int | np.ndarray) -> np.ndarray:
        """
        Integrate a kernel over triangle(s) of a mesh.

        Args:
            kernel: Callable evaluated at physical quadrature points.
            mesh (Mesh): Mesh providing the vertex coordinates.
            triangles (int | np.ndarray): Triangle index or index array.

        Returns:
            np.ndarray: Integral per triangle, shape
                triangles.shape + value_shape (broadcast with the kernel
                batch axes).
        """
        tri = mesh.triangles[triangles]
        p0 = mesh.points[tri[..., 0]]
        p1 = mesh.points[tri[..., 1]]
        p2 = mesh.points[tri[..., 2]]
        return self.integrate_vertices(kernel, p0, p1, p2)

    def integrate_vertices(self,
                           kernel: Callable[[np.ndarray], np.ndarray],
                           p0: np.ndarray,
                           p1: np.ndarray,
                           p2: np.ndarray) -> np.ndarray:
        """
        Same as :meth:`integrate` with explicit vertex arrays of shape
        (..., 3).
        """
        y, a2 = map_to_physical_triangle_batch(self.xi_eta, p0, p1, p2)
        values = kernel(y)
        value_ndim = getattr(kernel, "value_ndim", 0)
        w_phys = self.w * a2[..., None]
        return _weighted_sum(values, w_phys, value_ndim)


class AdaptiveIntegrator(Integrator):
    """
    Adaptive integration by recursive midpoint subdivision.

    Each triangle is split into four children; the split is accepted once
    the sum over the children differs from the parent value by at most
    ``tolerance`` (absolute, max over the batch), otherwise each child is
    refined further, up to ``max_depth`` levels.
    """

    adaptive = True

    def __init__(self,
                 tolerance: float = 0.005,
                 order: int = 3,
                 max_depth: int = 10):
        super().__init__(order)
        if tolerance <= 0:
            raise ValueError("Adaptive tolerance must be positive.")
        self.tolerance = tolerance
        self.max_depth = max_depth
        self._depth_warned = False

    def integrate_vertices(self,
                           kernel: Callable[[np.ndarray], np.ndarray],
                           p0: np.ndarray,
                           p1: np.ndarray,
                           p2: np.ndarray) -> np.ndarray:
        I0 = super().integrate_vertices(kernel, p0, p1, p2)
        return self._refine(kernel, p0, p1, p2, I0, 0)

    def _refine(self, kernel, p0, p1, p2, I0, depth):
        children = split_triangle(p0, p1, p2)
        parts = [super(AdaptiveIntegrator, self).integrate_vertices(kernel,
                                                                     *c)
                 for c in children]
        total = parts[0] + parts[1] + parts[2] + parts[3]

        if np.max(np.abs(total - I0), initial=0.0) <= self.tolerance:
            return total

        if depth + 1 >= self.max_depth:
            if not self._depth_warned:
                warnings.warn("Adaptive quadrature reached the maximum "
                              f"depth ({self.max_depth}) without meeting "
                              f"the tolerance {self.tolerance}.")
                self._depth_warned = True
            return total

        return sum(self._refine(kernel, *c, Ic, depth + 1)
                   for c, Ic in zip(children, parts))


_precompute_common_quadratures()
