from __future__ import annotations

import numpy as np
import scipy.sparse as sp
from scipy.sparse.linalg import expm_multiply

from .state import BlockState


class ExpHNoEmin:
    """Imaginary-time propagator exp(-dtau (H_b - E_min,b)) acting on block states.

    Blocks of dimension <= `small_matrix_size` use the stored eigen
    decomposition; larger blocks use the Krylov action
    `scipy.sparse.linalg.expm_multiply` on the block Hamiltonian.
    """

    def __init__(self, sosp, *, small_matrix_size: int = 64) -> None:
        small_matrix_size = int(small_matrix_size)
        if small_matrix_size < 0:
            raise ValueError("small_matrix_size must be >= 0")
        self.sosp = sosp
        self.small_matrix_size = small_matrix_size
        self._shifted: dict[int, sp.csr_matrix] = {}

    def _shifted_hamiltonian(self, block: int) -> sp.csr_matrix:
        h = self._shifted.get(block)
        if h is None:
            es = self.sosp.eigensystems[block]
            h = sp.csr_matrix(es.hamiltonian) - es.e_min * sp.identity(es.size, format="csr")
            h = sp.csr_matrix(h)
            self._shifted[block] = h
        return h

    def uses_krylov(self, block: int) -> bool:
        return self.sosp.eigensystems[int(block)].size > self.small_matrix_size

    def apply_no_emin(self, state: BlockState, dtau: float) -> BlockState:
        if state.is_null:
            return state
        dtau = float(dtau)
        if dtau < 0.0:
            raise ValueError("dtau must be >= 0")
        block = int(state.block)
        if dtau == 0.0:
            return state.copy()

        es = self.sosp.eigensystems[block]
        if es.size <= self.small_matrix_size:
            u = es.unitary
            decay = np.exp(-dtau * (es.eigenvalues - es.e_min))
            vec = u @ (decay * (u.conj().T @ state.vec))
        else:
            vec = expm_multiply((-dtau) * self._shifted_hamiltonian(block), state.vec)
        return BlockState(block=block, vec=np.asarray(vec))
