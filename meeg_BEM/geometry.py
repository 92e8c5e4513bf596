import numpy as np

from meeg_BEM.mesh import Mesh


def icosphere_mesh(radius: float = 1.0,
                   center: np.ndarray | None = None,
                   divisions: int = 1,
                   name: str = "sphere") -> Mesh:
    """
    Create a sphere mesh by subdividing an icosahedron and projecting the
    points on the sphere. Triangles are oriented with outward normals.

    Args:
        radius (float): Sphere radius.
        center (np.ndarray | None): Sphere center (3,), origin by default.
        divisions (int): Number of subdivisions along each icosahedron
            edge (20 * divisions**2 triangles).
        name (str): Mesh label.

    Returns:
        Mesh: The sphere surface.
    """
    if radius <= 0:
        raise ValueError("Radius must be positive.")
    c = np.zeros(3) if center is None else np.asarray(center,
                                                      dtype=float).reshape(3)

    t = 0.5 * (1.0 + np.sqrt(5.0))
    v = np.array([[-1, t, 0], [1, t, 0], [-1, -t, 0], [1, -t, 0],
                  [0, -1, t], [0, 1, t], [0, -1, -t], [0, 1, -t],
                  [t, 0, -1], [t, 0, 1], [-t, 0, -1], [-t, 0, 1]],
                 dtype=float)
    elements = np.array([[0, 11, 5], [0, 5, 1], [0, 1, 7], [0, 7, 10],
                         [0, 10, 11], [1, 5, 9], [5, 11, 4], [11, 10, 2],
                         [10, 7, 6], [7, 1, 8], [3, 9, 4], [3, 4, 2],
                         [3, 2, 6], [3, 6, 8], [3, 8, 9], [4, 9, 5],
                         [2, 4, 11], [6, 2, 10], [8, 6, 7], [9, 8, 1]])

    if divisions > 1:
        v, elements = subdivide_triangles(v, elements, divisions)

    v = v / np.linalg.norm(v, axis=1)[:, None]
    elements = orient_outward(v, elements, np.zeros(3))

    return Mesh(c + radius * v, elements, name=name)


def box_mesh(center: np.ndarray,
             size: np.ndarray,
             divisions: int = 1,
             name: str = "box") -> Mesh:
    """
    Closed axis-aligned box, two triangles per face before subdivision.

    Args:
        center (np.ndarray): Center of the box (3,).
        size (np.ndarray): Edge lengths along x, y and z (3,).
        divisions (int): Number of subdivisions along each triangle edge.
        name (str): Mesh label.

    Returns:
        Mesh: Box surface with outward normals.
    """
    c = np.asarray(center, dtype=float).reshape(3)
    h = 0.5 * np.asarray(size, dtype=float).reshape(3)
    if np.any(h <= 0):
        raise ValueError("Box edge lengths must be positive.")

    # corner k has coordinate signs given by the bits of k
    corners = np.array([[(k >> a) & 1 for a in range(3)] for k in range(8)])
    v = c + (2 * corners - 1) * h

    elements = []
    for axis in range(3):
        bit = 1 << axis
        u, w = [1 << a for a in range(3) if a != axis]
        for base in (0, bit):
            quad = [base, base + u, base + u + w, base + w]
            elements += [quad[:3], [quad[0], quad[2], quad[3]]]
    elements = np.array(elements)

    v, elements = subdivide_triangles(v, elements, divisions)
    return Mesh(v, orient_outward(v, elements, c), name=name)


def orient_outward(vertices: np.ndarray,
                   elements: np.ndarray,
                   inside: np.ndarray) -> np.ndarray:
    """
    Flip triangles whose normal points towards ``inside``. Valid for
    star-shaped surfaces around ``inside``.
    """
    elements = np.array(elements, copy=True)
    p0 = vertices[elements[:, 0]]
    cross = np.cross(vertices[elements[:, 1]] - p0,
                     vertices[elements[:, 2]] - p0)
    centroids = vertices[elements].mean(axis=1)
    flip = np.sum(cross * (centroids - inside), axis=1) < 0
    elements[flip] = elements[flip][:, [0, 2, 1]]
    return elements


def _subdivision_pattern(divisions: int) -> tuple[np.ndarray, np.ndarray]:
    """
    Barycentric grid of a triangle split ``divisions`` times along each
    edge, and the local triangles of that grid (same orientation as the
    parent).
    """
    n = divisions
    ij = [(i, j) for i in range(n + 1) for j in range(n + 1 - i)]
    index = {key: k for k, key in enumerate(ij)}
    local = [(index[i, j], index[i + 1, j], index[i, j + 1])
             for i, j in ij if i + j < n]
    local += [(index[i + 1, j], index[i + 1, j + 1], index[i, j + 1])
              for i, j in ij if i + j < n - 1]
    return np.array(ij, dtype=float) / n, np.array(local)


def subdivide_triangles(vertices: np.ndarray,
                        elements: np.ndarray,
                        divisions: int = 1) -> tuple[np.ndarray, np.ndarray]:
    """
    Split every triangle into divisions**2 triangles.

    Grid points shared by neighbouring triangles are merged, so a closed
    surface stays closed.

    Returns:
        new_vertices (np.ndarray): Shape (N_new, 3).
        new_elements (np.ndarray): Shape (M * divisions**2, 3).
    """
    if divisions < 1:
        raise ValueError("Divisions must be at least 1.")
    vertices = np.asarray(vertices, dtype=float)
    elements = np.asarray(elements, dtype=np.int64)
    if divisions == 1:
        return vertices.copy(), elements.copy()

    uv, local = _subdivision_pattern(divisions)
    tri = vertices[elements]
    w = np.stack([1.0 - uv.sum(axis=1), uv[:, 0], uv[:, 1]], axis=1)
    grid = np.einsum('gk,mkd->mgd', w, tri).reshape(-1, 3)

    # rounding merges the copies of an edge point created by both
    # neighbouring triangles
    keys = np.round(grid, 10) + 0.0
    _, first, inverse = np.unique(keys, axis=0, return_index=True,
                                  return_inverse=True)
    ids = inverse.reshape(len(elements), -1)
    new_elements = ids[:, local].reshape(-1, 3)
    return grid[first], new_elements
