"""First pass: per-block lower bound on the exponential suppression.

Walking a block through the operator sequence and accumulating
``sum_i dtau_i * E_min(current block)`` gives a bound ``B`` such that every
state of that block contributes at most ``exp(-B)`` to the trace. The pass
costs O(n_blocks * len(config)) and decides which blocks are worth the exact
propagation.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import os

import numpy as np

from .configuration import GapTable
from .state import FORBIDDEN


@dataclass(frozen=True)
class BlockBounds:
    """Result of the bound pass.

    Attributes
    ----------
    bounds
        float64 array (n_blocks,): accumulated sum of dtau * E_min along each walk.
    final_block
        int32 array (n_blocks,): block reached at the end of the walk, or
        FORBIDDEN if the walk hit a structural zero or was pruned.
    reference_bound
        Bound of the unpruned walk started from block 0.
    """

    bounds: np.ndarray
    final_block: np.ndarray
    reference_bound: float

    @property
    def n_blocks(self) -> int:
        return int(self.bounds.size)

    @property
    def returning(self) -> np.ndarray:
        """bool mask of blocks whose walk ends in the starting block."""

        return self.final_block == np.arange(self.n_blocks, dtype=np.int32)

    @property
    def any_returning(self) -> bool:
        return bool(np.any(self.returning))


def _block_e_min(sosp) -> np.ndarray:
    e_min = getattr(sosp, "e_min", None)
    if e_min is None:
        e_min = [es.eigenvalues[0] for es in sosp.eigensystems]
    return np.asarray(e_min, dtype=np.float64)


def walk_bound(
    gaps: GapTable,
    sosp,
    start: int,
    *,
    e_min: np.ndarray | None = None,
    limit: float = math.inf,
    path: list[float] | None = None,
) -> tuple[int, float]:
    """Walk block `start` through the operator sequence.

    Returns ``(final_block, bound)``. The walk stops at the first forbidden
    step (keeping the partial sum), and is marked FORBIDDEN as soon as the
    running bound exceeds `limit` after an operator. If `path` is given, the
    running bound after the initial gap and after every operator is appended.
    """

    if e_min is None:
        e_min = _block_e_min(sosp)
    bl = int(start)
    acc = float(gaps.dtau0) * float(e_min[bl])
    if path is not None:
        path.append(acc)
    for i in range(len(gaps)):
        bl = sosp.connect(bool(gaps.dagger[i]), int(gaps.linear_index[i]), bl)
        if bl == FORBIDDEN:
            break
        acc += float(gaps.dtau[i]) * float(e_min[bl])
        if path is not None:
            path.append(acc)
        if acc > limit:
            bl = FORBIDDEN
            break
    return int(bl), float(acc)


def _bound_backend(requested: str | None = None) -> str:
    """Return the selected bound-pass backend: 'python' | 'numba'."""

    v = os.environ.get("CTHYB_TRACE_BOUND_BACKEND", "auto") if requested is None else requested
    v = str(v).strip().lower()
    if v in ("", "auto"):
        try:
            from cthyb_trace import _bounds_numba as _nb  # noqa: PLC0415

            if bool(getattr(_nb, "HAS_NUMBA", False)):
                return "numba"
        except Exception:
            pass
        return "python"
    if v in ("py", "python"):
        return "python"
    if v == "numba":
        return "numba"
    raise ValueError(f"unknown bound backend: {v!r}")


def _load_numba_kernel():
    try:
        from cthyb_trace import _bounds_numba as _nb  # noqa: PLC0415
    except Exception as e:
        raise RuntimeError(f"bound backend 'numba' requested but numba is unavailable: {e}") from e
    return _nb


def estimate_bounds(
    gaps: GapTable,
    sosp,
    *,
    margin: float = 35.0,
    backend: str | None = None,
) -> BlockBounds:
    """Bound pass over all blocks; blocks exceeding reference + `margin` are pruned."""

    margin = float(margin)
    if math.isnan(margin) or margin < 0.0:
        raise ValueError("margin must be >= 0")
    n_ops = getattr(sosp, "n_operators", None)
    if n_ops is not None and len(gaps) > 0:
        bad = int(np.max(gaps.linear_index))
        if bad >= int(n_ops):
            raise ValueError(f"operator index {bad} out of range for a basis with {int(n_ops)} operators")
    e_min = _block_e_min(sosp)
    n_blocks = int(e_min.size)

    use_numba = False
    if _bound_backend(backend) == "numba":
        has_table = hasattr(sosp, "connectivity_table")
        if backend is not None and str(backend).strip().lower() == "numba" and not has_table:
            raise RuntimeError("bound backend 'numba' requires a basis with connectivity_table()")
        use_numba = has_table

    if use_numba:
        _nb = _load_numba_kernel()
        bounds, final, ref = _nb.estimate_bounds_numba(
            float(gaps.dtau0),
            np.ascontiguousarray(gaps.dtau, dtype=np.float64),
            np.ascontiguousarray(gaps.dagger, dtype=np.int64),
            np.ascontiguousarray(gaps.linear_index, dtype=np.int64),
            np.ascontiguousarray(sosp.connectivity_table(), dtype=np.int32),
            np.ascontiguousarray(e_min),
            margin,
        )
        return BlockBounds(
            bounds=np.asarray(bounds, dtype=np.float64),
            final_block=np.asarray(final, dtype=np.int32),
            reference_bound=float(ref),
        )

    _, ref = walk_bound(gaps, sosp, 0, e_min=e_min)
    limit = ref + margin
    bounds = np.empty(n_blocks, dtype=np.float64)
    final = np.empty(n_blocks, dtype=np.int32)
    for n in range(n_blocks):
        final[n], bounds[n] = walk_bound(gaps, sosp, n, e_min=e_min, limit=limit)
    return BlockBounds(bounds=bounds, final_block=final, reference_bound=float(ref))
