"""
Matrix-fill drivers.

Each driver fills one block of a caller-owned matrix (``Matrix`` or
``SymMatrix``) at explicit row/column offsets, so that the blocks of every
layer pair share a single global matrix. Kernels are used without the
1/(4π) factor; scaling the blocks is left to the caller
(``storage.scale_block``).

Rows are independent: with ``config.workers > 1`` they are split in
contiguous chunks and dispatched to a thread pool, every task owning its
own :class:`OperatorIntegrator`. Rows write disjoint cells, so no locking
is needed.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

import numpy as np
from tqdm import tqdm

from meeg_BEM.config import AssemblyConfig, resolve_config
from meeg_BEM.exceptions import DimensionMismatch
from meeg_BEM.integrators import OperatorIntegrator, ferguson, p1p0
from meeg_BEM.mesh import Mesh
from meeg_BEM.storage import Matrix

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]


# ============================================================================
# Helpers
# ============================================================================

def check_block(mat: Matrix,
                row0: int,
                nrows: int,
                col0: int,
                ncols: int,
                upper: bool = False,
                what: str = "block") -> None:
    """
    Check that the block [row0, row0+nrows) x [col0, col0+ncols) can be
    written into ``mat``.

    Args:
        upper (bool): Only the cells with local column >= local row are
            written (same-mesh fill).

    Raises:
        DimensionMismatch: Negative offset, block outside the matrix, or a
            block reaching below the diagonal of symmetric storage.
    """
    if row0 < 0 or col0 < 0:
        raise DimensionMismatch(f"{what}: offsets must be non negative, got "
                                f"({row0}, {col0}).")
    nlin, ncol = mat.shape
    if row0 + nrows > nlin or col0 + ncols > ncol:
        raise DimensionMismatch(
            f"{what}: [{row0}:{row0 + nrows}, {col0}:{col0 + ncols}] does "
            f"not fit in a {nlin} x {ncol} matrix.")
    if mat.symmetric and nrows and ncols:
        lowest_gap = col0 - row0 if upper else col0 - (row0 + nrows - 1)
        if lowest_gap < 0:
            raise DimensionMismatch(
                f"{what}: [{row0}:{row0 + nrows}, {col0}:{col0 + ncols}] "
                "reaches below the diagonal of a symmetric matrix.")


def _run_rows(nrows: int,
              make_state: Callable[[], object],
              fill_row: Callable[[object, int], None],
              config: AssemblyConfig,
              progress: Optional[ProgressCallback],
              desc: str) -> None:
    """
    Call ``fill_row(state, row)`` for every row, sequentially or on a
    thread pool. ``make_state`` builds the per-task state. Progress is
    reported from the calling thread.
    """
    done = 0

    def task(start, stop):
        state = make_state()
        for row in range(start, stop):
            fill_row(state, row)
        return stop - start

    with tqdm(total=nrows, desc=desc, disable=not config.verbose) as bar:
        if config.workers <= 1 or nrows <= 1:
            state = make_state()
            for row in range(nrows):
                fill_row(state, row)
                done += 1
                bar.update(1)
                if progress is not None:
                    progress(done, nrows)
            return

        # contiguous chunks keep the S row cache warm inside a task
        chunk = max(1, -(-nrows // (4 * config.workers)))
        with ThreadPoolExecutor(max_workers=config.workers) as pool:
            futures = [pool.submit(task, start, min(start + chunk, nrows))
                       for start in range(0, nrows, chunk)]
            for fut in as_completed(futures):
                n = fut.result()
                done += n
                bar.update(n)
                if progress is not None:
                    progress(done, nrows)


def _fill(mat, offset_i, offset_j, i, cols, vals, same):
    mat[offset_i + i, offset_j + cols] = vals
    if same and not mat.symmetric:
        # block[c, i] = block[i, c]
        mat[offset_i + cols[1:], offset_j + i] = vals[1:]


# ============================================================================
# Boundary operators
# ============================================================================

def operator_s(m1: Mesh,
               m2: Mesh,
               mat: Matrix,
               offset_i: int,
               offset_j: int,
               gauss_order: Optional[int] = None,
               *,
               config: Optional[AssemblyConfig] = None,
               progress: Optional[ProgressCallback] = None) -> None:
    """
    Fill the single-layer block S(T1, T2), rows the triangles of m1 and
    columns the triangles of m2.

    When ``m1 is m2`` only the cells with column >= row are computed; on
    general storage they are mirrored to the lower half.
    """
    config = resolve_config(config, gauss_order)
    same = m1 is m2
    m1.validate()
    if not same:
        m2.validate()
    check_block(mat, offset_i, m1.num_triangles, offset_j, m2.num_triangles,
                upper=same, what="S block")
    logger.info("Operator S: %r x %r at (%d, %d), order %d",
                m1, m2, offset_i, offset_j, config.gauss_order)

    n2 = m2.num_triangles

    def make_state():
        return OperatorIntegrator(m1, m2, config.make_integrator(),
                                  config.operator_n)

    def fill_row(op, i):
        cols = np.arange(i, n2) if same else np.arange(n2)
        vals = op.single_layer(i, cols)
        _fill(mat, offset_i, offset_j, i, cols, vals, same)

    _run_rows(m1.num_triangles, make_state, fill_row, config, progress,
              "Operator S")


def operator_d(m1: Mesh,
               m2: Mesh,
               mat: Matrix,
               offset_i: int,
               offset_j: int,
               gauss_order: Optional[int] = None,
               *,
               config: Optional[AssemblyConfig] = None,
               progress: Optional[ProgressCallback] = None) -> None:
    """
    Fill the double-layer block D(T1, P2), rows the triangles of m1 and
    columns the points of m2. D has no symmetry: the whole block is filled
    even when ``m1 is m2``.

    The optimized variant adds the contributions of every triangle of m2
    to the three columns of its vertices, so the block must hold zeros
    beforehand; the reference variant assigns one value per cell.
    """
    config = resolve_config(config, gauss_order)
    m1.validate()
    m2.validate(require_incidence=True)
    check_block(mat, offset_i, m1.num_triangles, offset_j, m2.num_points,
                what="D block")
    logger.info("Operator D (%s): %r x %r at (%d, %d), order %d",
                config.operator_d, m1, m2, offset_i, offset_j,
                config.gauss_order)

    all_trgs = np.arange(m2.num_triangles)
    all_pts = np.arange(m2.num_points)
    cols_triple = offset_j + m2.triangles

    def make_state():
        return OperatorIntegrator(m1, m2, config.make_integrator(),
                                  config.operator_n)

    if config.operator_d == "reference":
        def fill_row(op, i):
            mat[offset_i + i, offset_j + all_pts] = op.double_layer(i,
                                                                    all_pts)
    else:
        def fill_row(op, i):
            vals = op.double_layer_vec(i, all_trgs)
            mat.accumulate_triple(offset_i + i, cols_triple, vals)

    _run_rows(m1.num_triangles, make_state, fill_row, config, progress,
              "Operator D")


def operator_n(m1: Mesh,
               m2: Mesh,
               mat: Matrix,
               offset_i: int,
               offset_j: int,
               gauss_order: Optional[int] = None,
               iop_s: Optional[int] = None,
               jop_s: Optional[int] = None,
               *,
               config: Optional[AssemblyConfig] = None,
               progress: Optional[ProgressCallback] = None) -> None:
    """
    Fill the hypersingular block N(P1, P2), rows the points of m1 and
    columns the points of m2.

    Args:
        iop_s, jop_s (int | None): Position in ``mat`` of an S block of the
            same mesh pair, already filled and not yet scaled. When given,
            S values are read from it instead of being recomputed.

    When ``m1 is m2`` only the cells with column >= row are computed; on
    general storage they are mirrored to the lower half.
    """
    config = resolve_config(config, gauss_order)
    same = m1 is m2
    m1.validate(require_incidence=True)
    if not same:
        m2.validate(require_incidence=True)
    check_block(mat, offset_i, m1.num_points, offset_j, m2.num_points,
                upper=same, what="N block")

    s_block = None
    if iop_s is not None or jop_s is not None:
        if iop_s is None or jop_s is None:
            raise DimensionMismatch("iop_s and jop_s must be given "
                                    "together.")
        nlin, ncol = mat.shape
        if iop_s < 0 or jop_s < 0 or iop_s + m1.num_triangles > nlin or \
                jop_s + m2.num_triangles > ncol:
            raise DimensionMismatch(
                f"S block at ({iop_s}, {jop_s}) of size "
                f"{m1.num_triangles} x {m2.num_triangles} does not fit in "
                f"a {nlin} x {ncol} matrix.")
        s_block = (mat, iop_s, jop_s)

    logger.info("Operator N (%s): %r x %r at (%d, %d), order %d, %s",
                config.operator_n, m1, m2, offset_i, offset_j,
                config.gauss_order,
                "S computed" if s_block is None else
                f"S read at ({iop_s}, {jop_s})")

    n2 = m2.num_points

    def make_state():
        return OperatorIntegrator(m1, m2, config.make_integrator(),
                                  config.operator_n)

    def fill_row(op, i):
        cols = np.arange(i, n2) if same else np.arange(n2)
        vals = op.hypersingular(i, cols, s_block)
        _fill(mat, offset_i, offset_j, i, cols, vals, same)

    _run_rows(m1.num_points, make_state, fill_row, config, progress,
              "Operator N")


# ============================================================================
# Internal points and auxiliary operators
# ============================================================================

def operator_s_internal(mesh: Mesh,
                        points: np.ndarray,
                        mat: Matrix,
                        offset_i: int = 0,
                        offset_j: int = 0,
                        *,
                        config: Optional[AssemblyConfig] = None,
                        progress: Optional[ProgressCallback] = None) -> None:
    """
    Single-layer potential of every triangle of ``mesh`` at arbitrary
    points: rows the points, columns the triangles.
    """
    config = resolve_config(config)
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    mesh.validate()
    check_block(mat, offset_i, points.shape[0], offset_j, mesh.num_triangles,
                what="S internal block")
    logger.info("Operator S internal: %d points x %r at (%d, %d)",
                points.shape[0], mesh, offset_i, offset_j)

    cols = np.arange(mesh.num_triangles)

    def make_state():
        return OperatorIntegrator(mesh, mesh, config.make_integrator())

    def fill_row(op, i):
        vals = op.single_layer_internal(points[i:i + 1], cols)[0]
        mat[offset_i + i, offset_j + cols] = vals

    _run_rows(points.shape[0], make_state, fill_row, config, progress,
              "Operator S internal")


def operator_d_internal(mesh: Mesh,
                        points: np.ndarray,
                        mat: Matrix,
                        offset_i: int = 0,
                        offset_j: int = 0,
                        *,
                        config: Optional[AssemblyConfig] = None,
                        progress: Optional[ProgressCallback] = None) -> None:
    """
    P1 double-layer potential of ``mesh`` at arbitrary points: rows the
    points, columns the mesh points. Values are added to the block.
    """
    config = resolve_config(config)
    points = np.asarray(points, dtype=float).reshape(-1, 3)
    mesh.validate(require_incidence=True)
    check_block(mat, offset_i, points.shape[0], offset_j, mesh.num_points,
                what="D internal block")
    logger.info("Operator D internal: %d points x %r at (%d, %d)",
                points.shape[0], mesh, offset_i, offset_j)

    trgs = np.arange(mesh.num_triangles)
    cols_triple = offset_j + mesh.triangles

    def make_state():
        return OperatorIntegrator(mesh, mesh, config.make_integrator())

    def fill_row(op, i):
        vals = op.double_layer_internal(points[i:i + 1], trgs)[0]
        mat.accumulate_triple(offset_i + i, cols_triple, vals)

    _run_rows(points.shape[0], make_state, fill_row, config, progress,
              "Operator D internal")


def operator_p1p0(mesh: Mesh,
                  mat: Matrix,
                  offset_i: int,
                  offset_j: int,
                  *,
                  config: Optional[AssemblyConfig] = None,
                  progress: Optional[ProgressCallback] = None) -> None:
    """
    P1/P0 mass coupling: rows the triangles, columns the points; |T|/3 at
    the three vertices of each triangle, other cells untouched.
    """
    config = resolve_config(config)
    mesh.validate()
    check_block(mat, offset_i, mesh.num_triangles, offset_j, mesh.num_points,
                what="P1P0 block")
    logger.info("Operator P1P0: %r at (%d, %d)", mesh, offset_i, offset_j)

    def fill_row(_, t):
        for p in mesh.triangle(t):
            mat[offset_i + t, offset_j + p] = p1p0(t, p, mesh)

    _run_rows(mesh.num_triangles, lambda: None, fill_row, config, progress,
              "Operator P1P0")


def operator_ferguson(x: np.ndarray,
                      mesh: Mesh,
                      mat: Matrix,
                      offset_i: int,
                      offset_j: int) -> None:
    """
    Ferguson vectors of every point of ``mesh`` observed at x: the three
    components go to rows offset_i, offset_i + 1, offset_i + 2 and column
    offset_j + point.
    """
    x = np.asarray(x, dtype=float).reshape(3)
    mesh.validate(require_incidence=True)
    check_block(mat, offset_i, 3, offset_j, mesh.num_points,
                what="Ferguson block")
    logger.debug("Operator Ferguson: %r at (%d, %d)", mesh, offset_i,
                 offset_j)

    cols = offset_j + np.arange(mesh.num_points)
    vals = ferguson(x, np.arange(mesh.num_points), mesh)
    for k in range(3):
        mat[offset_i + k, cols] = vals[:, k]
