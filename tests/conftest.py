import numpy as np
import pytest

from meeg_BEM import Mesh, icosphere_mesh


def copy_mesh(mesh: Mesh) -> Mesh:
    """Same geometry, distinct object (cross-mesh code paths)."""
    return Mesh(mesh.points.copy(), mesh.triangles.copy(),
                name=mesh.name + "_copy")


@pytest.fixture(scope="module")
def icosahedron():
    # 12 points, 20 triangles
    return icosphere_mesh(radius=1.0, divisions=1)


@pytest.fixture(scope="module")
def sphere():
    # 42 points, 80 triangles
    return icosphere_mesh(radius=1.0, divisions=2)


@pytest.fixture
def unit_triangle():
    points = np.array([[0.0, 0.0, 0.0],
                       [1.0, 0.0, 0.0],
                       [0.0, 1.0, 0.0]])
    return Mesh(points, np.array([[0, 1, 2]]), name="triangle")


@pytest.fixture
def two_triangles():
    """Two well separated, non parallel triangles."""
    points = np.array([[0.0, 0.0, 0.0],
                       [1.0, 0.0, 0.0],
                       [0.0, 1.0, 0.0],
                       [0.5, 0.2, 3.0],
                       [1.2, 0.9, 3.4],
                       [0.1, 1.1, 3.2]])
    return Mesh(points, np.array([[0, 1, 2], [3, 4, 5]]), name="pair")


@pytest.fixture(scope="module")
def sphere_copy(sphere):
    return copy_mesh(sphere)
