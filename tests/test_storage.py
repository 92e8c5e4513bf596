import numpy as np
import pytest

from meeg_BEM.storage import Matrix, SymMatrix, scale_block


def test_symmatrix_mirrors_reads():
    mat = SymMatrix(4)
    mat[1, 3] = 2.5
    mat[2, 2] = -1.0
    assert mat[3, 1] == 2.5
    assert mat[1, 3] == 2.5
    assert mat[2, 2] == -1.0
    full = mat.to_array()
    np.testing.assert_array_equal(full, full.T)
    assert full[3, 1] == 2.5


def test_symmatrix_rejects_writes_below_diagonal():
    mat = SymMatrix(3)
    with pytest.raises(IndexError):
        mat[2, 0] = 1.0
    with pytest.raises(IndexError):
        mat.accumulate(np.array([0, 2]), np.array([1, 1]), 1.0)
    with pytest.raises(IndexError):
        mat[0, 3] = 1.0


def test_symmatrix_from_array_keeps_upper_half():
    a = np.arange(16.0).reshape(4, 4)
    mat = SymMatrix.from_array(a)
    iu = np.triu_indices(4)
    np.testing.assert_array_equal(mat.to_array()[iu], a[iu])
    assert mat[3, 0] == a[0, 3]


def test_accumulate_adds_repeated_indices():
    for mat in (Matrix(3), SymMatrix(3)):
        mat.accumulate(np.array([0, 0, 1]), np.array([2, 2, 1]),
                       np.array([1.0, 2.0, 4.0]))
        assert mat[0, 2] == 3.0
        assert mat[1, 1] == 4.0


def test_accumulate_triple_batches():
    mat = Matrix(2, 5)
    cols = np.array([[0, 1, 2], [2, 3, 4]])
    vals = np.array([[1.0, 2.0, 3.0], [10.0, 20.0, 30.0]])
    mat.accumulate_triple(1, cols, vals)
    np.testing.assert_array_equal(mat.to_array()[1], [1.0, 2.0, 13.0, 20.0,
                                                      30.0])
    np.testing.assert_array_equal(mat.to_array()[0], np.zeros(5))


def test_matrix_shape_and_dims():
    mat = Matrix(3, 7)
    assert mat.shape == (3, 7)
    assert mat.nlin() == 3
    assert mat.ncol() == 7
    assert not mat.symmetric
    sym = SymMatrix(5)
    assert sym.shape == (5, 5)
    assert sym.symmetric


def test_scale_block_on_symmetric_diagonal_block_scales_once():
    a = np.ones((4, 4))
    mat = SymMatrix.from_array(a)
    scale_block(mat, 0, 0, 3, 3, 2.0)
    full = mat.to_array()
    np.testing.assert_array_equal(full[:3, :3], np.full((3, 3), 2.0))
    assert full[0, 3] == 1.0
    assert full[3, 3] == 1.0


def test_scale_block_off_diagonal():
    mat = Matrix.from_array(np.ones((4, 6)))
    scale_block(mat, 1, 2, 3, 5, -3.0)
    full = mat.to_array()
    np.testing.assert_array_equal(full[1:3, 2:5], np.full((2, 3), -3.0))
    assert full.sum() == pytest.approx(24 - 6 + 6 * -3.0)

    sym = SymMatrix.from_array(np.ones((5, 5)))
    scale_block(sym, 0, 3, 2, 5, 0.5)
    np.testing.assert_array_equal(sym.to_array()[:2, 3:], np.full((2, 2),
                                                                  0.5))
    assert sym[4, 1] == 0.5
