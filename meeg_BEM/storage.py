"""
Matrix storage used as assembly target.

Both classes expose the same element-access contract, so the fill drivers
are written once for either storage:

    mat[i, j]                               read
    mat[i, j] = v                           write
    mat.accumulate(i, j, v)                 mat[i, j] += v
    mat.accumulate_triple(row, cols, vals)  batched += on three columns

Index arguments may be integers or integer arrays (numpy broadcasting).
"""
import numpy as np


class Matrix:
    """Dense general matrix."""

    symmetric = False

    def __init__(self,
                 nlin: int,
                 ncol: int | None = None,
                 dtype=np.float64):
        ncol = nlin if ncol is None else ncol
        self.data = np.zeros((nlin, ncol), dtype=dtype)

    @classmethod
    def from_array(cls, array: np.ndarray) -> "Matrix":
        array = np.asarray(array)
        if array.ndim != 2:
            raise ValueError("Matrix needs a 2-D array.")
        mat = cls(*array.shape, dtype=array.dtype)
        mat.data[...] = array
        return mat

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape

    def nlin(self) -> int:
        return self.data.shape[0]

    def ncol(self) -> int:
        return self.data.shape[1]

    def __getitem__(self, idx):
        i, j = idx
        return self.data[i, j]

    def __setitem__(self, idx, value):
        i, j = idx
        self.data[i, j] = value

    def accumulate(self, i, j, value) -> None:
        np.add.at(self.data, (i, j), value)

    def accumulate_triple(self,
                          row: int,
                          cols: np.ndarray,
                          values: np.ndarray) -> None:
        """
        Add ``values`` to ``(row, cols)``.

        Args:
            row (int): Row index.
            cols (np.ndarray): Column indices, shape (3,) or (K, 3).
            values (np.ndarray): Values, same shape as ``cols``.
        """
        self.accumulate(row, np.asarray(cols).ravel(),
                        np.asarray(values).ravel())

    def to_array(self) -> np.ndarray:
        return self.data.copy()

    def __repr__(self) -> str:
        return f"Matrix(shape={self.shape})"


class SymMatrix(Matrix):
    """
    Symmetric matrix with packed upper-triangular storage.

    Reads below the diagonal are served from the mirrored cell. Writes must
    address the stored half (i <= j); anything else raises ``IndexError``.
    """

    symmetric = True

    def __init__(self, n: int, dtype=np.float64):
        self.n = n
        self.data = np.zeros(n * (n + 1) // 2, dtype=dtype)

    @classmethod
    def from_array(cls, array: np.ndarray) -> "SymMatrix":
        array = np.asarray(array)
        if array.ndim != 2 or array.shape[0] != array.shape[1]:
            raise ValueError("SymMatrix needs a square array.")
        mat = cls(array.shape[0], dtype=array.dtype)
        iu = np.triu_indices(mat.n)
        mat.data[mat._index(*iu)] = array[iu]
        return mat

    @property
    def shape(self) -> tuple[int, int]:
        return (self.n, self.n)

    def nlin(self) -> int:
        return self.n

    def ncol(self) -> int:
        return self.n

    def _index(self, i, j):
        # row-major packing of the upper triangle
        i = np.asarray(i)
        j = np.asarray(j)
        return i * self.n - (i * (i - 1)) // 2 + (j - i)

    def _write_index(self, i, j):
        i, j = np.broadcast_arrays(np.asarray(i), np.asarray(j))
        if np.any(i > j):
            raise IndexError("SymMatrix stores the upper triangle only; "
                             "cannot write below the diagonal.")
        if np.any(j >= self.n) or np.any(i < 0):
            raise IndexError(f"Index out of range for SymMatrix of size "
                             f"{self.n}.")
        return self._index(i, j)

    def __getitem__(self, idx):
        i, j = idx
        i, j = np.asarray(i), np.asarray(j)
        lo = np.minimum(i, j)
        hi = np.maximum(i, j)
        return self.data[self._index(lo, hi)]

    def __setitem__(self, idx, value):
        self.data[self._write_index(*idx)] = value

    def accumulate(self, i, j, value) -> None:
        np.add.at(self.data, self._write_index(i, j), value)

    def to_array(self) -> np.ndarray:
        full = np.zeros((self.n, self.n), dtype=self.data.dtype)
        iu = np.triu_indices(self.n)
        full[iu] = self.data[self._index(*iu)]
        full.T[iu] = full[iu]
        return full

    def __repr__(self) -> str:
        return f"SymMatrix(n={self.n})"


def scale_block(mat: Matrix,
                istart: int,
                jstart: int,
                istop: int,
                jstop: int,
                coeff: float) -> None:
    """
    Multiply the block [istart, istop) x [jstart, jstop) by ``coeff`` in
    place.

    On symmetric storage a block whose upper left corner lies on the
    diagonal is a diagonal block: only its stored half is scaled.
    """
    rows = np.arange(istart, istop)
    cols = np.arange(jstart, jstop)
    I, J = np.meshgrid(rows, cols, indexing='ij')
    if mat.symmetric and istart == jstart:
        keep = J >= I
        I, J = I[keep], J[keep]
    mat[I, J] = mat[I, J] * coeff
