from __future__ import annotations

"""Numba kernel for the bound pass.

This module is imported lazily by `cthyb_trace.bounds` when the backend is set
to "numba" (or "auto" with numba available). It mirrors `walk_bound` step by
step so both backends produce identical floating-point sums.
"""

import numpy as np

import numba as nb  # type: ignore

HAS_NUMBA = True


@nb.njit(cache=True)
def _walk(start, dtau0, dtau, dagger, linear_index, table, e_min, limit):
    bl = start
    acc = dtau0 * e_min[bl]
    for i in range(dtau.shape[0]):
        bl = table[dagger[i], linear_index[i], bl]
        if bl < 0:
            bl = -1
            break
        acc += dtau[i] * e_min[bl]
        if acc > limit:
            bl = -1
            break
    return bl, acc


@nb.njit(cache=True)
def estimate_bounds_numba(dtau0, dtau, dagger, linear_index, table, e_min, margin):
    n_blocks = e_min.shape[0]
    _, ref = _walk(0, dtau0, dtau, dagger, linear_index, table, e_min, np.inf)
    limit = ref + margin

    bounds = np.empty(n_blocks, dtype=np.float64)
    final = np.empty(n_blocks, dtype=np.int32)
    for n in range(n_blocks):
        bl, acc = _walk(n, dtau0, dtau, dagger, linear_index, table, e_min, limit)
        bounds[n] = acc
        final[n] = bl
    return bounds, final, ref
