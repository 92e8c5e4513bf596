import numpy as np
import pytest

from meeg_BEM import (AssemblyConfig,
                      DimensionMismatch,
                      InvalidGeometry,
                      Matrix,
                      Mesh,
                      SymMatrix,
                      box_mesh,
                      operator_d,
                      operator_d_internal,
                      operator_ferguson,
                      operator_n,
                      operator_p1p0,
                      operator_s,
                      operator_s_internal)
from meeg_BEM.integrators import ferguson


class RecordingMatrix(Matrix):
    """Upper-triangular storage that remembers every written cell."""

    symmetric = True

    def __init__(self, n):
        super().__init__(n)
        self.written = []

    def __setitem__(self, idx, value):
        i, j = np.broadcast_arrays(*map(np.asarray, idx))
        self.written.extend(zip(i.ravel().tolist(), j.ravel().tolist()))
        super().__setitem__(idx, value)


def _s_cross(mesh, other, config=None):
    mat = Matrix(mesh.num_triangles, other.num_triangles)
    operator_s(mesh, other, mat, 0, 0, config=config)
    return mat.to_array()


def test_same_mesh_fill_writes_upper_triangle_only(icosahedron):
    n_t, n_p = icosahedron.num_triangles, icosahedron.num_points
    for fill, n, offset in ((operator_s, n_t, 3), (operator_n, n_p, 0)):
        mat = RecordingMatrix(n + offset)
        fill(icosahedron, icosahedron, mat, offset, offset)
        assert mat.written
        assert all(i <= j for i, j in mat.written)
        assert len(set(mat.written)) == n * (n + 1) // 2


def test_same_mesh_s_matches_cross_mesh_upper_half(sphere, sphere_copy):
    n = sphere.num_triangles
    sym = SymMatrix(n + 5)
    operator_s(sphere, sphere, sym, 5, 5)
    same = sym.to_array()[5:, 5:]
    cross = _s_cross(sphere, sphere_copy)

    iu = np.triu_indices(n)
    np.testing.assert_allclose(same[iu], cross[iu], rtol=1e-13)
    # the lower half is the mirror, close to the computed transpose
    np.testing.assert_allclose(same, cross, rtol=0.05)


def test_same_mesh_on_general_storage_is_mirrored(icosahedron):
    mat = Matrix(icosahedron.num_triangles)
    operator_s(icosahedron, icosahedron, mat, 0, 0)
    full = mat.to_array()
    np.testing.assert_array_equal(full, full.T)
    assert np.all(full > 0.0)


def test_sphere_single_layer_is_positive_definite(sphere):
    mat = SymMatrix(sphere.num_triangles)
    operator_s(sphere, sphere, mat, 0, 0, gauss_order=3)
    full = mat.to_array()
    assert np.all(np.diag(full) > 0.0)
    assert np.linalg.eigvalsh(full).min() > 0.0


@pytest.mark.parametrize("variant", ["optimized", "reference"])
def test_double_layer_rows_sum_to_half_solid_angle(sphere, variant):
    mat = Matrix(sphere.num_triangles, sphere.num_points)
    operator_d(sphere, sphere, mat, 0, 0,
               config=AssemblyConfig(operator_d=variant))
    np.testing.assert_allclose(mat.to_array().sum(axis=1),
                               -2.0 * np.pi * sphere.areas, rtol=1e-8)


def test_double_layer_variants_agree(sphere, sphere_copy):
    blocks = []
    for variant in ("optimized", "reference"):
        mat = Matrix(sphere.num_triangles + 2, sphere.num_points + 4)
        operator_d(sphere, sphere_copy, mat, 2, 4,
                   config=AssemblyConfig(operator_d=variant))
        blocks.append(mat.to_array())
    np.testing.assert_allclose(blocks[0], blocks[1], rtol=1e-10, atol=1e-13)
    assert np.all(blocks[0][:2] == 0.0)
    assert np.all(blocks[0][:, :4] == 0.0)


def test_double_layer_into_symmetric_storage(icosahedron):
    n_p, n_t = icosahedron.num_points, icosahedron.num_triangles
    sym = SymMatrix(n_t + n_p)
    operator_d(icosahedron, icosahedron, sym, 0, n_t)
    dense = Matrix(n_t, n_p)
    operator_d(icosahedron, icosahedron, dense, 0, 0)
    np.testing.assert_allclose(sym.to_array()[:n_t, n_t:], dense.to_array(),
                               rtol=1e-14)


@pytest.mark.parametrize("variant", ["optimized", "reference"])
def test_double_layer_rows_on_closed_box(variant):
    box = box_mesh(center=[0.1, -0.2, 0.3], size=[2.0, 1.0, 0.5],
                   divisions=2)
    mat = Matrix(box.num_triangles, box.num_points)
    operator_d(box, box, mat, 0, 0,
               config=AssemblyConfig(operator_d=variant))
    # coplanar triangles of the same face contribute nothing
    np.testing.assert_allclose(mat.to_array().sum(axis=1),
                               -2.0 * np.pi * box.areas, rtol=1e-8)


def test_adaptive_double_layer(icosahedron):
    n_t, n_p = icosahedron.num_triangles, icosahedron.num_points
    blocks = {}
    for variant in ("optimized", "reference"):
        mat = Matrix(n_t, n_p)
        operator_d(icosahedron, icosahedron, mat, 0, 0,
                   config=AssemblyConfig(lhs_quadrature="adaptive",
                                         tolerance=1e-4, operator_d=variant,
                                         workers=2))
        blocks[variant] = mat.to_array()

    fixed = Matrix(n_t, n_p)
    operator_d(icosahedron, icosahedron, fixed, 0, 0, gauss_order=10)
    expected = fixed.to_array()
    atol = 0.02 * np.abs(expected).max()

    np.testing.assert_allclose(blocks["optimized"], blocks["reference"],
                               atol=atol)
    for block in blocks.values():
        np.testing.assert_allclose(block, expected, atol=atol)
        np.testing.assert_allclose(block.sum(axis=1),
                                   -2.0 * np.pi * icosahedron.areas,
                                   rtol=0.01)


def test_adaptive_hypersingular_with_and_without_s_block(icosahedron):
    n_p, n_t = icosahedron.num_points, icosahedron.num_triangles
    config = AssemblyConfig(lhs_quadrature="adaptive", tolerance=1e-4)
    other = Mesh(icosahedron.points.copy(), icosahedron.triangles.copy())

    # cross mesh: reading the S block gives the same values as computing
    mat = Matrix(n_p + n_t)
    operator_s(icosahedron, other, mat, n_p, n_p, config=config)
    operator_n(icosahedron, other, mat, 0, 0, iop_s=n_p, jop_s=n_p,
               config=config)
    fresh = Matrix(n_p)
    operator_n(icosahedron, other, fresh, 0, 0, config=config)
    reused = mat.to_array()[:n_p, :n_p]
    np.testing.assert_allclose(reused, fresh.to_array(), rtol=1e-12,
                               atol=1e-15)
    scale = np.abs(reused).sum(axis=1)
    assert np.all(np.abs(reused.sum(axis=1)) < 1e-10 * scale)

    # same mesh on symmetric storage, against a high order fixed fill
    sym = SymMatrix(n_p + n_t)
    operator_s(icosahedron, icosahedron, sym, n_p, n_p, config=config)
    operator_n(icosahedron, icosahedron, sym, 0, 0, iop_s=n_p, jop_s=n_p,
               config=config)
    computed = SymMatrix(n_p)
    operator_n(icosahedron, icosahedron, computed, 0, 0, config=config)
    fixed = SymMatrix(n_p)
    operator_n(icosahedron, icosahedron, fixed, 0, 0, gauss_order=10)
    expected = fixed.to_array()
    atol = 0.05 * np.abs(expected).max()
    np.testing.assert_allclose(sym.to_array()[:n_p, :n_p], expected,
                               atol=atol)
    np.testing.assert_allclose(computed.to_array(), expected, atol=atol)


def test_hypersingular_rows_vanish(sphere, sphere_copy):
    mat = Matrix(sphere.num_points)
    operator_n(sphere, sphere_copy, mat, 0, 0)
    full = mat.to_array()
    scale = np.abs(full).sum(axis=1)
    assert np.all(np.abs(full.sum(axis=1)) < 1e-10 * scale)


def test_hypersingular_reads_precomputed_single_layer(sphere, sphere_copy):
    n_p, n_t = sphere.num_points, sphere.num_triangles
    config = AssemblyConfig(gauss_order=2)

    mat = Matrix(n_p + n_t)
    operator_s(sphere, sphere_copy, mat, n_p, n_p, config=config)
    operator_n(sphere, sphere_copy, mat, 0, 0, iop_s=n_p, jop_s=n_p,
               config=config)

    fresh = Matrix(n_p)
    operator_n(sphere, sphere_copy, fresh, 0, 0, config=config)
    np.testing.assert_allclose(mat.to_array()[:n_p, :n_p], fresh.to_array(),
                               rtol=1e-12, atol=1e-15)


def test_hypersingular_same_mesh_with_symmetric_s_block(sphere):
    n_p, n_t = sphere.num_points, sphere.num_triangles
    sym = SymMatrix(n_p + n_t)
    operator_s(sphere, sphere, sym, n_p, n_p)
    operator_n(sphere, sphere, sym, 0, 0, iop_s=n_p, jop_s=n_p)

    fresh = SymMatrix(n_p)
    operator_n(sphere, sphere, fresh, 0, 0)
    expected = fresh.to_array()
    # mirrored S cells differ from the recomputed ones by the outer
    # quadrature error only
    np.testing.assert_allclose(sym.to_array()[:n_p, :n_p], expected,
                               atol=0.05 * np.abs(expected).max())


def test_hypersingular_variants_agree(icosahedron):
    blocks = []
    for variant in ("optimized", "reference"):
        mat = SymMatrix(icosahedron.num_points)
        operator_n(icosahedron, icosahedron, mat, 0, 0,
                   config=AssemblyConfig(operator_n=variant))
        blocks.append(mat.to_array())
    np.testing.assert_allclose(blocks[0], blocks[1], rtol=1e-9, atol=1e-12)


@pytest.mark.parametrize("fill", [operator_s, operator_d, operator_n])
def test_threaded_fill_matches_sequential(sphere, sphere_copy, fill):
    blocks = []
    for workers in (1, 3):
        mat = Matrix(sphere.num_points + sphere.num_triangles)
        fill(sphere, sphere_copy, mat, 0, 0,
             config=AssemblyConfig(workers=workers))
        blocks.append(mat.to_array())
    np.testing.assert_array_equal(blocks[0], blocks[1])


@pytest.mark.parametrize("workers", [1, 2])
def test_progress_callback(icosahedron, workers):
    calls = []
    mat = SymMatrix(icosahedron.num_triangles)
    operator_s(icosahedron, icosahedron, mat, 0, 0,
               config=AssemblyConfig(workers=workers),
               progress=lambda done, total: calls.append((done, total)))
    n = icosahedron.num_triangles
    assert calls[-1] == (n, n)
    assert all(total == n for _, total in calls)
    assert [done for done, _ in calls] == sorted(done for done, _ in calls)
    if workers == 1:
        assert len(calls) == n


def test_verbose_progress_bar(icosahedron):
    mat = SymMatrix(icosahedron.num_points)
    operator_n(icosahedron, icosahedron, mat, 0, 0,
               config=AssemblyConfig(verbose=True))
    assert mat[0, 0] != 0.0


def test_offsets_are_validated(icosahedron):
    n_t, n_p = icosahedron.num_triangles, icosahedron.num_points
    with pytest.raises(DimensionMismatch):
        operator_s(icosahedron, icosahedron, Matrix(n_t), -1, 0)
    with pytest.raises(DimensionMismatch):
        operator_s(icosahedron, icosahedron, Matrix(n_t), 1, 1)
    with pytest.raises(DimensionMismatch):
        operator_d(icosahedron, icosahedron, Matrix(n_t, n_p - 1), 0, 0)
    # rectangular block below the diagonal of symmetric storage
    with pytest.raises(DimensionMismatch):
        operator_d(icosahedron, icosahedron, SymMatrix(n_t + n_p), n_p, 0)
    # same-mesh block starting below the diagonal
    with pytest.raises(DimensionMismatch):
        operator_s(icosahedron, icosahedron, SymMatrix(n_t + 2), 2, 0)


def test_single_layer_block_for_n_is_validated(icosahedron):
    n_t, n_p = icosahedron.num_triangles, icosahedron.num_points
    mat = SymMatrix(n_p + n_t)
    with pytest.raises(DimensionMismatch):
        operator_n(icosahedron, icosahedron, mat, 0, 0, iop_s=n_p + 1,
                   jop_s=n_p + 1)
    with pytest.raises(DimensionMismatch):
        operator_n(icosahedron, icosahedron, mat, 0, 0, iop_s=n_p)


def test_degenerate_mesh_is_rejected():
    points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [2.0, 0.0, 0.0],
                       [0.0, 1.0, 0.0]])
    mesh = Mesh(points, np.array([[0, 1, 3], [0, 1, 2]]))
    with pytest.raises(InvalidGeometry):
        operator_s(mesh, mesh, SymMatrix(2), 0, 0)

    lonely = Mesh(points, np.array([[0, 1, 3]]))
    with pytest.raises(InvalidGeometry):
        operator_n(lonely, lonely, SymMatrix(4), 0, 0)


def test_internal_operators(sphere):
    points = np.array([[0.0, 0.0, 0.0], [0.2, 0.1, -0.3], [0.0, 0.0, 2.5]])

    s_mat = Matrix(3, sphere.num_triangles + 1)
    operator_s_internal(sphere, points, s_mat, 0, 1)
    s = s_mat.to_array()
    assert np.all(s[:, 0] == 0.0)
    assert np.all(s[:, 1:] > 0.0)

    d_mat = Matrix(4, sphere.num_points)
    operator_d_internal(sphere, points, d_mat, 1, 0,
                        config=AssemblyConfig(workers=2))
    np.testing.assert_allclose(d_mat.to_array().sum(axis=1),
                               [0.0, -4 * np.pi, -4 * np.pi, 0.0],
                               atol=1e-10)


def test_p1p0_block(sphere):
    mat = Matrix(sphere.num_triangles, sphere.num_points + 2)
    operator_p1p0(sphere, mat, 0, 2)
    full = mat.to_array()
    for t in range(sphere.num_triangles):
        row = full[t]
        cols = 2 + sphere.triangle(t)
        np.testing.assert_allclose(row[cols], sphere.areas[t] / 3.0)
        assert np.count_nonzero(row) == 3
    # every point collects a third of its star
    star = full.sum(axis=0)[2:]
    expected = np.bincount(sphere.triangles.ravel(),
                           weights=np.repeat(sphere.areas / 3.0, 3))
    np.testing.assert_allclose(star, expected)


def test_ferguson_block(sphere):
    x = np.array([0.0, 0.4, 1.8])
    mat = Matrix(5, sphere.num_points + 1)
    operator_ferguson(x, sphere, mat, 1, 1)
    full = mat.to_array()
    vals = ferguson(x, np.arange(sphere.num_points), sphere)
    np.testing.assert_allclose(full[1:4, 1:], vals.T, rtol=1e-14)
    assert np.all(full[0] == 0.0)
    assert np.all(full[4] == 0.0)
    assert np.all(full[:, 0] == 0.0)


@pytest.mark.parametrize("workers", [1, 2])
def test_progress_bar_closed_when_a_row_fails(icosahedron, monkeypatch,
                                              workers):
    import meeg_BEM.matrix_assembly as assembly

    exits = []

    class Bar:
        def __init__(self, **kwargs):
            pass

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            exits.append(exc_type)
            return False

        def update(self, n):
            pass

    def stop(done, total):
        raise RuntimeError("stop")

    monkeypatch.setattr(assembly, "tqdm", Bar)
    with pytest.raises(RuntimeError):
        operator_s(icosahedron, icosahedron,
                   SymMatrix(icosahedron.num_triangles), 0, 0,
                   config=AssemblyConfig(workers=workers), progress=stop)
    assert exits == [RuntimeError]
