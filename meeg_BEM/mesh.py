import numpy as np

from meeg_BEM.exceptions import InvalidGeometry


class Mesh:
    def __init__(self,
                 points: np.ndarray,
                 triangles: np.ndarray,
                 name: str = ""):
        """
        Triangulated surface used by the operator assembly.

        Args:
            points (np.ndarray): Array of shape (N, 3) representing the
                coordinates of the mesh points.
            triangles (np.ndarray): Array of shape (M, 3) representing the
                point indices of each triangle. The vertex order defines the
                triangle normal (right-hand rule).
            name (str, optional): Label used in log messages.
        """
        self.points = np.ascontiguousarray(points, dtype=np.float64)
        self.triangles = np.ascontiguousarray(triangles, dtype=np.int64)
        self.name = name

        if self.points.ndim != 2 or self.points.shape[1] != 3:
            raise InvalidGeometry("points must have shape (N, 3), got "
                                  f"{self.points.shape}")
        if self.triangles.ndim != 2 or self.triangles.shape[1] != 3:
            raise InvalidGeometry("triangles must have shape (M, 3), got "
                                  f"{self.triangles.shape}")
        if self.triangles.size and (self.triangles.min() < 0 or
                self.triangles.max() >= self.points.shape[0]):
            raise InvalidGeometry("triangle indices out of range "
                                  f"[0, {self.points.shape[0]})")

        self.num_points = self.points.shape[0]
        self.num_triangles = self.triangles.shape[0]

        self.precompute_elements()
        self.build_incidence()

    def precompute_elements(self):
        """
        Precompute geometric properties of the triangles. Initializes:
            - normals: Unit normal vector of each triangle.
            - centroids: Centroid of each triangle.
            - areas: Area of each triangle.
        """
        v0 = self.points[self.triangles[:, 0], :]
        v1 = self.points[self.triangles[:, 1], :]
        v2 = self.points[self.triangles[:, 2], :]
        e1 = v1 - v0
        e2 = v2 - v0
        cross = np.cross(e1, e2)
        a2 = np.linalg.norm(cross, axis=1)

        with np.errstate(divide='ignore', invalid='ignore'):
            self.normals = cross / a2[:, np.newaxis]
        self.centroids = (v0 + v1 + v2) / 3.0
        self.areas = 0.5 * a2

    def build_incidence(self):
        """
        Point/triangle incidence. Initializes the flat arrays
        ``incidence_points``, ``incidence_triangles``, ``incidence_local``
        (one entry per triangle corner, sorted by point) and the per-point
        lists returned by :meth:`triangles_for_point`.
        """
        pts = self.triangles.ravel()
        tris = np.repeat(np.arange(self.num_triangles), 3)
        local = np.tile(np.arange(3), self.num_triangles)

        order = np.lexsort((tris, pts))
        self.incidence_points = pts[order]
        self.incidence_triangles = tris[order]
        self.incidence_local = local[order]

        bounds = np.searchsorted(self.incidence_points,
                                 np.arange(self.num_points + 1))
        self._incidence_bounds = bounds
        self._trgs_for_point = [self.incidence_triangles[bounds[i]:bounds[i + 1]]
                                for i in range(self.num_points)]

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def point(self, idx: int) -> np.ndarray:
        return self.points[idx]

    def triangle(self, idx: int) -> np.ndarray:
        return self.triangles[idx]

    def triangles_for_point(self, idx: int) -> np.ndarray:
        """Sorted indices of the triangles having point ``idx`` as vertex."""
        return self._trgs_for_point[idx]

    def incidences_for_point(self, idx: int) -> slice:
        """Slice of the flat incidence arrays belonging to point ``idx``."""
        return slice(self._incidence_bounds[idx],
                     self._incidence_bounds[idx + 1])

    def incidences_for_points(self,
                              points: np.ndarray) -> tuple[np.ndarray,
                                                           np.ndarray]:
        """
        Flat incidence entries of several points.

        Args:
            points (np.ndarray): Point indices, shape (P,).

        Returns:
            sel (np.ndarray): Positions in the incidence arrays.
            owner (np.ndarray): For each entry of ``sel``, the position in
                ``points`` of the point it belongs to.
        """
        points = np.atleast_1d(np.asarray(points, dtype=np.int64))
        starts = self._incidence_bounds[points]
        counts = self._incidence_bounds[points + 1] - starts
        owner = np.repeat(np.arange(points.size), counts)
        offsets = np.cumsum(counts) - counts
        sel = np.arange(counts.sum()) - np.repeat(offsets, counts) + \
            np.repeat(starts, counts)
        return sel, owner

    def contains(self, tri: int, point: int) -> int:
        """Local index (0, 1, 2) of ``point`` in triangle ``tri``, -1 if the
        point is not a vertex of the triangle."""
        hits = np.nonzero(self.triangles[tri] == point)[0]
        return int(hits[0]) if hits.size else -1

    def next(self, tri: int, local: int) -> int:
        """Point index of the vertex following ``local`` in ``tri``."""
        return int(self.triangles[tri, (local + 1) % 3])

    def prev(self, tri: int, local: int) -> int:
        """Point index of the vertex preceding ``local`` in ``tri``."""
        return int(self.triangles[tri, (local + 2) % 3])

    def opposite_chords(self) -> np.ndarray:
        """
        For every incidence (point P in triangle T) the chord
        next(P) - prev(P) of T, shape (3M, 3), ordered like the incidence
        arrays.
        """
        tri = self.triangles[self.incidence_triangles]
        loc = self.incidence_local
        rows = np.arange(loc.size)
        nxt = tri[rows, (loc + 1) % 3]
        prv = tri[rows, (loc + 2) % 3]
        return self.points[nxt] - self.points[prv]

    def altitude_curls(self) -> np.ndarray:
        """
        For every incidence the rotated gradient ∇φ_P × n of the hat
        function of P on T, computed from the altitude through P (the foot of P projected
        on the opposite edge), shape (3M, 3).
        """
        tri = self.triangles[self.incidence_triangles]
        loc = self.incidence_local
        rows = np.arange(loc.size)
        P = self.points[tri[rows, loc]]
        A = self.points[tri[rows, (loc + 1) % 3]]
        B = self.points[tri[rows, (loc + 2) % 3]]
        AB = B - A
        AP = P - A
        coef = np.sum(AP * AB, axis=1) / np.sum(AB * AB, axis=1)
        aq = P - (A + AB * coef[:, None])
        aq /= np.sum(aq * aq, axis=1)[:, None]
        return np.cross(aq, self.normals[self.incidence_triangles])

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate(self,
                 require_incidence: bool = False,
                 area_eps: float = 1e-14) -> None:
        """
        Check that the mesh can be used for assembly.

        Args:
            require_incidence (bool): Also require every point to belong to
                at least one triangle (point based operators).
            area_eps (float): Triangles with area below
                ``area_eps * max(area)`` are degenerate.

        Raises:
            InvalidGeometry: On the first problem found.
        """
        if not np.all(np.isfinite(self.points)):
            raise InvalidGeometry(f"Mesh {self.name!r} has non finite "
                                  "point coordinates.")
        if self.num_triangles == 0:
            raise InvalidGeometry(f"Mesh {self.name!r} has no triangles.")

        scale = self.areas.max()
        bad = np.nonzero(~(self.areas > area_eps * scale))[0]
        if bad.size:
            raise InvalidGeometry(f"Mesh {self.name!r}: degenerate triangle "
                                  f"{bad[0]} (area={self.areas[bad[0]]:.3e}).")

        if require_incidence:
            counts = np.diff(self._incidence_bounds)
            lonely = np.nonzero(counts == 0)[0]
            if lonely.size:
                raise InvalidGeometry(f"Mesh {self.name!r}: point "
                                      f"{lonely[0]} belongs to no triangle.")

    def __repr__(self) -> str:
        return (f"Mesh(name={self.name!r}, num_points={self.num_points}, "
                f"num_triangles={self.num_triangles})")
