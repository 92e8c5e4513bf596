import numpy as np

# Laplace kernels are used without the 1/(4π) factor; the assembly
# orchestrator scales the blocks (see storage.scale_block).

_REL_EPS = 1e-12


def _dot(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.sum(a * b, axis=-1)


def _norm(a: np.ndarray) -> np.ndarray:
    return np.linalg.norm(a, axis=-1)


def triangle_frame(p0: np.ndarray,
                   p1: np.ndarray,
                   p2: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """
    Unit normal and Jacobian scale of (a batch of) triangles.

    Args:
        p0, p1, p2 (np.ndarray): Vertex arrays of shape (..., 3).

    Returns:
        n_hat (np.ndarray): Unit normals, shape (..., 3), oriented by the
            vertex order (right-hand rule).
        a2 (np.ndarray): Twice the triangle areas, shape (...).
    """
    cross = np.cross(p1 - p0, p2 - p0)
    a2 = _norm(cross)
    return cross / a2[..., None], a2


def solid_angle(x: np.ndarray,
                p0: np.ndarray,
                p1: np.ndarray,
                p2: np.ndarray) -> np.ndarray:
    """
    Signed solid angle subtended by a triangle at x (Van Oosterom &
    Strackee).

    Positive when x lies on the side the triangle normal points to.

    Args:
        x (np.ndarray): Evaluation points, shape (..., 3).
        p0, p1, p2 (np.ndarray): Triangle vertices, broadcastable to x.

    Returns:
        np.ndarray: Solid angle in [-2π, 2π], shape (...).
    """
    r0 = x - p0
    r1 = x - p1
    r2 = x - p2
    n0 = _norm(r0)
    n1 = _norm(r1)
    n2 = _norm(r2)
    det = _dot(r0, np.cross(r1, r2))
    den = n0 * n1 * n2 + _dot(r0, r1) * n2 + _dot(r0, r2) * n1 + \
        _dot(r1, r2) * n0
    return 2.0 * np.arctan2(det, den)


def _edge_terms(x: np.ndarray,
                verts: tuple[np.ndarray, np.ndarray, np.ndarray],
                n_hat: np.ndarray) -> tuple[list, list, list]:
    """
    Per-edge quantities for the closed-form integrals. Edge e runs from
    vertex e to vertex e+1.

    Returns, for each edge:
        t: signed in-plane distance from the projection of x to the edge
           line (positive inside the triangle),
        g: ∫_edge 1/|x-y| dl,
        m: outward in-plane unit normal of the edge.
    """
    t_list, g_list, m_list = [], [], []
    for e in range(3):
        a = verts[e]
        b = verts[(e + 1) % 3]
        edge = b - a
        l_hat = edge / _norm(edge)[..., None]
        m = np.cross(l_hat, n_hat)

        ra = _norm(x - a)
        rb = _norm(x - b)
        sa = _dot(a - x, l_hat)
        sb = _dot(b - x, l_hat)

        # pick the form of the log ratio that does not cancel
        forward = (sa + sb) >= 0.0
        num = np.where(forward, rb + sb, ra - sa)
        den = np.where(forward, ra + sa, rb - sb)
        g = np.log(num / den)

        t_list.append(_dot(a - x, m))
        g_list.append(g)
        m_list.append(m)
    return t_list, g_list, m_list


def single_layer_potential(x: np.ndarray,
                           p0: np.ndarray,
                           p1: np.ndarray,
                           p2: np.ndarray) -> np.ndarray:
    """
    Potential of a unit uniform density on a planar triangle:

        S(x) = ∫_T 1/|x - y| dS_y
             = Σ_e t_e g_e - d Ω

    where d is the signed height of x above the triangle plane and Ω the
    signed solid angle.

    Args:
        x (np.ndarray): Evaluation points, shape (..., 3).
        p0, p1, p2 (np.ndarray): Triangle vertices, broadcastable to x.

    Returns:
        np.ndarray: Potential values, shape (...).
    """
    n_hat, a2 = triangle_frame(p0, p1, p2)
    tiny = _REL_EPS * np.sqrt(a2)
    with np.errstate(divide='ignore', invalid='ignore'):
        d = _dot(x - p0, n_hat)
        t, g, _ = _edge_terms(x, (p0, p1, p2), n_hat)
        total = sum(np.where(np.abs(te) > tiny, te * ge, 0.0)
                    for te, ge in zip(t, g))
        omega = solid_angle(x, p0, p1, p2)
        total = total - np.where(np.abs(d) > tiny, d * omega, 0.0)
    return total


def double_layer_potential_p1(x: np.ndarray,
                              p0: np.ndarray,
                              p1: np.ndarray,
                              p2: np.ndarray) -> np.ndarray:
    """
    Double-layer potential of the three P1 basis functions of a triangle:

        D_i(x) = ∫_T ∂/∂n_y (1/|x - y|) φ_i(y) dS_y
               = φ_i(x) Ω - d ∇φ_i · Σ_e m_e g_e

    φ_i is extended to x through its projection on the triangle plane.
    Points lying in the plane get the principal value (Ω = 0, d = 0).

    Args:
        x (np.ndarray): Evaluation points, shape (..., 3).
        p0, p1, p2 (np.ndarray): Triangle vertices, broadcastable to x.

    Returns:
        np.ndarray: Values for vertices (p0, p1, p2), shape (..., 3). Their
            sum is the solid angle Ω.
    """
    verts = (p0, p1, p2)
    n_hat, a2 = triangle_frame(p0, p1, p2)
    tiny = _REL_EPS * np.sqrt(a2)
    with np.errstate(divide='ignore', invalid='ignore'):
        d = _dot(x - p0, n_hat)
        off_plane = np.abs(d) > tiny
        omega = np.where(off_plane, solid_angle(x, p0, p1, p2), 0.0)
        _, g, m = _edge_terms(x, verts, n_hat)
        gm = sum(np.where(np.isfinite(ge), ge, 0.0)[..., None] * me
                 for ge, me in zip(g, m))

        out = []
        for i in range(3):
            a = verts[(i + 1) % 3]
            b = verts[(i + 2) % 3]
            opposite = b - a
            phi = _dot(np.cross(opposite, x - a), n_hat) / a2
            grad = np.cross(n_hat, opposite) / a2[..., None]
            val = phi * omega - np.where(off_plane, d * _dot(grad, gm), 0.0)
            out.append(val)
    return np.stack(out, axis=-1)


def p1_basis(x: np.ndarray,
             p0: np.ndarray,
             p1: np.ndarray,
             p2: np.ndarray) -> np.ndarray:
    """
    Values of the three P1 basis functions of a triangle at (the projection
    of) x, shape (..., 3).
    """
    verts = (p0, p1, p2)
    n_hat, a2 = triangle_frame(p0, p1, p2)
    out = []
    for i in range(3):
        a = verts[(i + 1) % 3]
        b = verts[(i + 2) % 3]
        out.append(_dot(np.cross(b - a, x - a), n_hat) / a2)
    return np.stack(out, axis=-1)

# ============================================================================
# Evaluator objects
# ============================================================================

class AnalyticS:
    """
    Single-layer potential of a fixed triangle.

    The triangle is set with :meth:`init` (mesh index) or
    :meth:`init_vertices` and :meth:`f` evaluates the potential at
    arbitrary points. Index arrays give batched vertex arrays; after
    :meth:`expand` they have shape (K, 1, 3) so that K triangles are
    evaluated against the same quadrature points.
    """

    value_ndim = 0

    def __init__(self):
        self.triangle = None
        self.p0 = self.p1 = self.p2 = None

    def init(self, triangle: int | np.ndarray, mesh):
        self.triangle = triangle
        tri = mesh.triangles[triangle]
        self.p0 = mesh.points[tri[..., 0]]
        self.p1 = mesh.points[tri[..., 1]]
        self.p2 = mesh.points[tri[..., 2]]
        return self

    def init_vertices(self,
                      p0: np.ndarray,
                      p1: np.ndarray,
                      p2: np.ndarray):
        self.triangle = None
        self.p0 = np.asarray(p0, dtype=float)
        self.p1 = np.asarray(p1, dtype=float)
        self.p2 = np.asarray(p2, dtype=float)
        return self

    def expand(self, axis: int = -2):
        """Insert a broadcast axis in the vertex arrays (before the
        coordinate axis by default)."""
        self.p0 = np.expand_dims(self.p0, axis)
        self.p1 = np.expand_dims(self.p1, axis)
        self.p2 = np.expand_dims(self.p2, axis)
        return self

    def f(self, x: np.ndarray) -> np.ndarray:
        return single_layer_potential(x, self.p0, self.p1, self.p2)

    __call__ = f


class AnalyticD3(AnalyticS):
    """
    Double-layer potential of a fixed triangle against its three P1 basis
    functions; :meth:`f` returns (..., 3).
    """

    value_ndim = 1

    def f(self, x: np.ndarray) -> np.ndarray:
        return double_layer_potential_p1(x, self.p0, self.p1, self.p2)

    __call__ = f


class AnalyticD(AnalyticS):
    """
    Double-layer potential of a fixed triangle against the P1 basis
    function of one of its vertices (scalar).
    """

    value_ndim = 0

    def __init__(self):
        super().__init__()
        self.local = None

    def init(self, triangle: int | np.ndarray, mesh, local=0):
        """
        Args:
            triangle (int | np.ndarray): Triangle index (or indices).
            mesh (Mesh): Owning mesh.
            local (int | np.ndarray): Local index (0, 1, 2) of the vertex
                whose basis function is integrated.
        """
        super().init(triangle, mesh)
        self.local = np.asarray(local)
        return self

    def expand(self, axis: int = -2):
        super().expand(axis)
        self.local = np.expand_dims(self.local, -1)
        return self

    def f(self, x: np.ndarray) -> np.ndarray:
        vals = double_layer_potential_p1(x, self.p0, self.p1, self.p2)
        local = np.broadcast_to(self.local, vals.shape[:-1])
        return np.take_along_axis(vals, local[..., None], axis=-1)[..., 0]

    __call__ = f

# ============================================================================
# Dipole sources
# ============================================================================

class AnalyticDipPot:
    """
    Potential of a current dipole (moment q at r0) in an infinite
    homogeneous medium:

        V(x) = q · (x - r0) / |x - r0|^3
    """

    value_ndim = 0

    def init(self, q: np.ndarray, r0: np.ndarray):
        self.q = np.asarray(q, dtype=float)
        self.r0 = np.asarray(r0, dtype=float)
        return self

    def f(self, x: np.ndarray) -> np.ndarray:
        r = x - self.r0
        R = _norm(r)
        return _dot(r, self.q) / R**3

    __call__ = f


class AnalyticDipPotGrad(AnalyticDipPot):
    """
    Gradient of the dipole potential with respect to the dipole position:

        ∂V/∂r0 = -q / R^3 + 3 (q · r) r / R^5,    r = x - r0
    """

    value_ndim = 1

    def f(self, x: np.ndarray) -> np.ndarray:
        r = x - self.r0
        R = _norm(r)[..., None]
        s = _dot(r, self.q)[..., None]
        return -self.q / R**3 + 3.0 * s * r / R**5

    __call__ = f


class AnalyticDipPotDer(AnalyticDipPot):
    """
    Normal derivative of the dipole potential weighted by the P1 basis
    functions of a triangle:

        f_i(x) = (n · ∇V(x)) φ_i(x),   ∇V = q / R^3 - 3 (q · r) r / R^5
    """

    value_ndim = 1

    def init(self, q, r0, mesh=None, triangle=None):
        """
        Args:
            q (np.ndarray): Dipole moment, shape (3,).
            r0 (np.ndarray): Dipole position, shape (3,).
            mesh (Mesh): Mesh owning the triangle(s).
            triangle (int | np.ndarray): Triangle index or index array; the
                vertex and normal arrays get a broadcast axis for the
                quadrature points.
        """
        super().init(q, r0)
        tri = mesh.triangles[triangle]
        self.p0 = mesh.points[tri[..., 0]][..., None, :]
        self.p1 = mesh.points[tri[..., 1]][..., None, :]
        self.p2 = mesh.points[tri[..., 2]][..., None, :]
        self.n_hat = mesh.normals[triangle][..., None, :]
        return self

    def normal_derivative(self, x: np.ndarray) -> np.ndarray:
        r = x - self.r0
        R = _norm(r)
        s = _dot(r, self.q)
        return _dot(self.q, self.n_hat) / R**3 - \
            3.0 * s * _dot(r, self.n_hat) / R**5

    def f(self, x: np.ndarray) -> np.ndarray:
        phi = p1_basis(x, self.p0, self.p1, self.p2)
        return self.normal_derivative(x)[..., None] * phi

    __call__ = f


class AnalyticDipPotDerGrad(AnalyticDipPotDer):
    """
    Gradient with respect to the dipole position of
    :class:`AnalyticDipPotDer`; :meth:`f` returns (..., 3, 3) indexed as
    [gradient component, basis function].

    With W = n · ∇V and H the Hessian of V in x, ∂W/∂r0 = -H n:

        H n = -3 [q (r·n) + r (q·n) + s n] / R^5 + 15 s (r·n) r / R^7
    """

    value_ndim = 2

    def f(self, x: np.ndarray) -> np.ndarray:
        r = x - self.r0
        R = _norm(r)[..., None]
        s = _dot(r, self.q)[..., None]
        rn = _dot(r, self.n_hat)[..., None]
        qn = _dot(self.q, self.n_hat)[..., None]
        Hn = -3.0 * (self.q * rn + r * qn + s * self.n_hat) / R**5 + \
            15.0 * s * rn * r / R**7
        phi = p1_basis(x, self.p0, self.p1, self.p2)
        return (-Hn)[..., :, None] * phi[..., None, :]

    __call__ = f
