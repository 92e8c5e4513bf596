from collections import OrderedDict

import numpy as np

from meeg_BEM.kernels import AnalyticS, AnalyticD, AnalyticD3
from meeg_BEM.mesh import Mesh
from meeg_BEM.quadrature import Integrator


class OperatorIntegrator:
    """
    Pairwise operator kernels between two meshes.

    One instance holds all the mutable state of a fill loop: the analytic
    evaluators, the quadrature integrator and a small cache of single-layer
    rows keyed by the first triangle (re-initialising the evaluator only
    when that triangle changes). Instances are not shared between threads;
    each worker task builds its own.

    Geometric conventions (m1 is the test mesh, m2 the trial mesh):

    - S(T1, T2) = ∫_T2 ∫_T1 1/|x - y|, the inner integral over T1 in closed
      form, the outer one by quadrature over T2.
    - D(T1, P2) = Σ_{T2 ∋ P2} ∫_T1 ∫_T2 ∂/∂n_y (1/|x - y|) φ_P2(y), the
      inner integral in closed form, the outer one by quadrature over T1.
    - N(P1, P2) = Σ_{T1 ∋ P1} Σ_{T2 ∋ P2} w(T1, T2) S(T1, T2) with
      w = -1/4 (CB1 · CB2) / (|T1| |T2|), CB the chord next - prev of the
      triangle seen from the point.
    """

    def __init__(self,
                 m1: Mesh,
                 m2: Mesh,
                 integrator: Integrator,
                 operator_n: str = "optimized",
                 cache_rows: int = 32):
        """
        Args:
            m1 (Mesh): Test (row) mesh.
            m2 (Mesh): Trial (column) mesh.
            integrator (Integrator): Quadrature used for the outer integrals.
            operator_n (str): "optimized" or "reference" N weights.
            cache_rows (int): Number of single-layer rows kept in memory.
        """
        self.m1 = m1
        self.m2 = m2
        self.integrator = integrator
        self.operator_n = operator_n
        self.cache_rows = cache_rows

        self._analy_s = AnalyticS()
        self._analy_d = AnalyticD()
        self._analy_d3 = AnalyticD3()
        self._last_t1 = None
        self._s_rows = OrderedDict()
        self._n_weights = None

    # ------------------------------------------------------------------
    # Single layer
    # ------------------------------------------------------------------

    def single_layer(self,
                     t1: int,
                     t2: int | np.ndarray) -> float | np.ndarray:
        """
        S(T1, T2) for one triangle of m1 and one or several triangles of m2.
        """
        if self._last_t1 != t1:
            self._last_t1 = t1
            self._analy_s.init(t1, self.m1)
        if self.integrator.adaptive and np.ndim(t2):
            # subdivision is decided per pair, not for the whole batch
            return np.array([self.integrator.integrate(self._analy_s,
                                                       self.m2, t)
                             for t in np.asarray(t2).ravel()]
                            ).reshape(np.shape(t2))
        return self.integrator.integrate(self._analy_s, self.m2, t2)

    def single_layer_row(self, t1: int) -> np.ndarray:
        """S(T1, T2) for every triangle T2 of m2 (cached)."""
        row = self._s_rows.get(t1)
        if row is not None:
            self._s_rows.move_to_end(t1)
            return row
        row = self.single_layer(t1, np.arange(self.m2.num_triangles))
        self._s_rows[t1] = row
        if len(self._s_rows) > self.cache_rows:
            self._s_rows.popitem(last=False)
        return row

    # ------------------------------------------------------------------
    # Double layer
    # ------------------------------------------------------------------

    def double_layer(self,
                     t1: int,
                     p2: int | np.ndarray) -> float | np.ndarray:
        """
        Reference form of D: one value per (triangle of m1, point of m2),
        summing the contributions of every triangle incident to the point.
        """
        sel, owner = self.m2.incidences_for_points(p2)
        trgs = self.m2.incidence_triangles[sel]
        local = self.m2.incidence_local[sel]
        if self.integrator.adaptive:
            vals = np.array([
                self.integrator.integrate(
                    self._analy_d.init(int(t), self.m2, int(loc)),
                    self.m1, t1)
                for t, loc in zip(trgs, local)])
        else:
            analy = self._analy_d.init(trgs, self.m2, local).expand()
            vals = self.integrator.integrate(analy, self.m1, t1)
        if np.ndim(p2) == 0:
            return float(vals.sum())
        return np.bincount(owner, weights=vals, minlength=np.size(p2))

    def double_layer_vec(self,
                         t1: int,
                         t2: int | np.ndarray) -> np.ndarray:
        """
        Optimized form of D: the contributions of T2 to the three P1
        functions of its vertices, shape (3,) or (K, 3). The caller adds
        them to the columns ``m2.triangles[t2]``.
        """
        if self.integrator.adaptive and np.ndim(t2):
            return np.array([self.double_layer_vec(t1, int(t))
                             for t in np.asarray(t2).ravel()]
                            ).reshape(np.shape(t2) + (3,))
        analy = self._analy_d3.init(t2, self.m2)
        if np.ndim(t2):
            analy.expand()
        return self.integrator.integrate(analy, self.m1, t1)

    # ------------------------------------------------------------------
    # Hypersingular
    # ------------------------------------------------------------------

    def _weights(self):
        if self._n_weights is None:
            if self.operator_n == "reference":
                u1 = self.m1.altitude_curls()
                u2 = u1 if self.m2 is self.m1 else self.m2.altitude_curls()
                coef = -1.0
            else:
                u1 = self.m1.opposite_chords() / \
                    self.m1.areas[self.m1.incidence_triangles][:, None]
                u2 = u1 if self.m2 is self.m1 else \
                    self.m2.opposite_chords() / \
                    self.m2.areas[self.m2.incidence_triangles][:, None]
                coef = -0.25
            self._n_weights = (u1, u2, coef)
        return self._n_weights

    def hypersingular(self,
                      p1: int,
                      p2: int | np.ndarray,
                      s_block: tuple | None = None) -> float | np.ndarray:
        """
        N(P1, P2) for one point of m1 and one or several points of m2.

        Args:
            p1 (int): Point of m1.
            p2 (int | np.ndarray): Point(s) of m2.
            s_block (tuple | None): ``(mat, iop_s, jop_s)`` locating an
                already assembled S block (S(T1, T2) stored at
                ``mat[iop_s + T1, jop_s + T2]``). When None the S values are
                computed here.
        """
        u1, u2, coef = self._weights()
        sel1, _ = self.m1.incidences_for_points(p1)
        sel2, owner = self.m2.incidences_for_points(p2)
        trgs2 = self.m2.incidence_triangles[sel2]

        total = np.zeros(sel2.size)
        for k in sel1:
            t1 = int(self.m1.incidence_triangles[k])
            if s_block is not None:
                mat, iop_s, jop_s = s_block
                s_vals = mat[iop_s + t1, jop_s + trgs2]
            else:
                s_vals = self.single_layer_row(t1)[trgs2]
            total += coef * (u2[sel2] @ u1[k]) * s_vals

        if np.ndim(p2) == 0:
            return float(total.sum())
        return np.bincount(owner, weights=total, minlength=np.size(p2))

    # ------------------------------------------------------------------
    # Internal points
    # ------------------------------------------------------------------

    def single_layer_internal(self,
                              points: np.ndarray,
                              t2: int | np.ndarray) -> np.ndarray:
        """Closed-form S of triangle(s) of m2 at arbitrary points, shape
        (P,) + t2.shape."""
        analy = self._analy_s.init(t2, self.m2)
        self._last_t1 = None
        return analy.f(np.asarray(points, dtype=float)[:, None, :]
                       if np.ndim(t2) else np.asarray(points, dtype=float))

    def double_layer_internal(self,
                              points: np.ndarray,
                              t2: int | np.ndarray) -> np.ndarray:
        """Closed-form P1 double layer of triangle(s) of m2 at arbitrary
        points, shape (P,) + t2.shape + (3,)."""
        analy = self._analy_d3.init(t2, self.m2)
        return analy.f(np.asarray(points, dtype=float)[:, None, :]
                       if np.ndim(t2) else np.asarray(points, dtype=float))


def p1p0(tri: int, point: int, mesh: Mesh) -> float:
    """
    Mass coupling of the P1 function of ``point`` and the P0 function of
    ``tri``: |T|/3 if the point is a vertex of the triangle, else 0.
    """
    if mesh.contains(tri, point) < 0:
        return 0.0
    return float(mesh.areas[tri] / 3.0)


def ferguson(x: np.ndarray,
             points: int | np.ndarray,
             mesh: Mesh) -> np.ndarray:
    """
    Ferguson vector of point(s) of a mesh observed at x:

        F(P) = Σ_{T ∋ P} -(B - A) / (2|T|) S_T(x)

    with A, B the vertices following and preceding P in T and S_T the
    single-layer potential of T.

    Returns:
        np.ndarray: Shape (3,) for a single point, (P, 3) otherwise.
    """
    x = np.asarray(x, dtype=float)
    sel, owner = mesh.incidences_for_points(points)
    trgs = mesh.incidence_triangles[sel]
    tri = mesh.triangles[trgs]
    loc = mesh.incidence_local[sel]
    rows = np.arange(sel.size)
    P = mesh.points[tri[rows, loc]]
    A = mesh.points[tri[rows, (loc + 1) % 3]]
    B = mesh.points[tri[rows, (loc + 2) % 3]]
    v = (B - A) * (-0.5 / mesh.areas[trgs])[:, None]

    # triangle seen from P, same orientation as in the mesh
    analy = AnalyticS().init_vertices(P, A, B)
    op_s = analy.f(x)

    contrib = v * op_s[:, None]
    out = np.zeros((np.size(points), 3))
    np.add.at(out, owner, contrib)
    if np.ndim(points) == 0:
        return out[0]
    return out
