"""Block decomposition of the local Hilbert space.

`SortedSpaces` is the eigenbasis consumed by the trace worker: a list of
blocks (dense integer index), each with ascending eigenvalues and the
eigenstates in the block's local basis, plus a table of fundamental operators
keyed by ``(dagger, linear_index)`` that maps every block either to exactly
one target block or to nothing (structural zero).
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import numpy as np
import scipy.linalg
import scipy.sparse as sp

from .state import FORBIDDEN, BlockState

OperatorBlocks = Mapping[int, tuple[int, Any]]


@dataclass(frozen=True)
class EigenSystem:
    """Eigen-decomposition of one block Hamiltonian.

    Attributes
    ----------
    eigenvalues
        float64 array of shape (n,), ascending.
    unitary
        Array of shape (n, n); column k is eigenstate k in the block's local basis.
    hamiltonian
        Block Hamiltonian in the local basis (dense array or scipy sparse matrix).
    """

    eigenvalues: np.ndarray
    unitary: np.ndarray
    hamiltonian: Any

    def __post_init__(self) -> None:
        e = np.asarray(self.eigenvalues, dtype=np.float64).ravel()
        u = np.asarray(self.unitary)
        n = int(e.size)
        if n == 0:
            raise ValueError("a block must contain at least one state")
        if u.shape != (n, n):
            raise ValueError(f"unitary has wrong shape: {u.shape} (expected {(n, n)})")
        if n > 1 and np.any(e[1:] < e[:-1]):
            raise ValueError("eigenvalues must be sorted ascending")
        if tuple(self.hamiltonian.shape) != (n, n):
            raise ValueError(f"hamiltonian has wrong shape: {self.hamiltonian.shape} (expected {(n, n)})")
        object.__setattr__(self, "eigenvalues", e)
        object.__setattr__(self, "unitary", u)

    @classmethod
    def from_hamiltonian(cls, h: Any) -> "EigenSystem":
        dense = h.toarray() if sp.issparse(h) else np.asarray(h)
        if dense.ndim != 2 or dense.shape[0] != dense.shape[1]:
            raise ValueError("block hamiltonian must be a square matrix")
        e, u = scipy.linalg.eigh(dense)
        return cls(eigenvalues=e, unitary=u, hamiltonian=sp.csr_matrix(dense))

    @property
    def size(self) -> int:
        return int(self.eigenvalues.size)

    @property
    def e_min(self) -> float:
        return float(self.eigenvalues[0])


class SortedSpaces:
    def __init__(
        self,
        eigensystems: Sequence[EigenSystem],
        operators: Mapping[tuple[bool, int], OperatorBlocks],
        *,
        n_operators: int | None = None,
    ) -> None:
        self._eigensystems = tuple(eigensystems)
        n_blocks = len(self._eigensystems)
        if n_blocks == 0:
            raise ValueError("at least one block is required")

        keys = [(bool(d), int(n)) for d, n in operators.keys()]
        if any(n < 0 for _, n in keys):
            raise ValueError("operator linear_index must be >= 0")
        n_ops = 1 + max((n for _, n in keys), default=-1)
        if n_operators is not None:
            if int(n_operators) < n_ops:
                raise ValueError("n_operators is smaller than the largest operator index")
            n_ops = int(n_operators)

        connect = np.full((2, n_ops, n_blocks), FORBIDDEN, dtype=np.int32)
        table: dict[tuple[bool, int], list[tuple[int, Any] | None]] = {}
        for (dag, n), blocks in operators.items():
            key = (bool(dag), int(n))
            row: list[tuple[int, Any] | None] = [None] * n_blocks
            for src, (tgt, mat) in blocks.items():
                src = int(src)
                tgt = int(tgt)
                if not (0 <= src < n_blocks and 0 <= tgt < n_blocks):
                    raise ValueError(f"operator {key} connects out-of-range blocks {src} -> {tgt}")
                if not sp.issparse(mat):
                    mat = np.asarray(mat)
                shape = (self._eigensystems[tgt].size, self._eigensystems[src].size)
                if tuple(mat.shape) != shape:
                    raise ValueError(f"operator {key} block {src} -> {tgt} has shape {mat.shape} (expected {shape})")
                row[src] = (tgt, mat)
                connect[int(key[0]), key[1], src] = tgt
            table[key] = row

        self._table = table
        self._connect = connect
        self._e_min = np.asarray([es.e_min for es in self._eigensystems], dtype=np.float64)
        self._is_complex = any(np.iscomplexobj(es.unitary) for es in self._eigensystems) or any(
            np.iscomplexobj(entry[1]) for row in table.values() for entry in row if entry is not None
        )

    # ------------------------------------------------------------------
    @classmethod
    def from_blocks(
        cls,
        hamiltonians: Sequence[Any],
        operators: Mapping[tuple[bool, int], OperatorBlocks],
        *,
        n_operators: int | None = None,
    ) -> "SortedSpaces":
        """Diagonalize explicit block Hamiltonians; `operators` maps (dagger, n) -> {src: (tgt, matrix)}."""

        eigensystems = [EigenSystem.from_hamiltonian(h) for h in hamiltonians]
        return cls(eigensystems, operators, n_operators=n_operators)

    @classmethod
    def from_fock_space(
        cls,
        hamiltonian: Any,
        annihilators: Sequence[Any],
        quantum_numbers: Sequence[Any] | None = None,
        *,
        tol: float = 1e-12,
    ) -> "SortedSpaces":
        """Split the Fock space into blocks labelled by conserved quantum numbers.

        `quantum_numbers` are diagonal operators commuting with the Hamiltonian
        (default: total particle number). Blocks are ordered by ascending
        quantum-number labels. Creation operators are built as adjoints of the
        annihilators.
        """

        h = sp.csr_matrix(hamiltonian)
        dim = int(h.shape[0])
        if h.shape != (dim, dim):
            raise ValueError("hamiltonian must be square")
        cs = [sp.csr_matrix(c) for c in annihilators]
        for c in cs:
            if c.shape != (dim, dim):
                raise ValueError("annihilators must have the hamiltonian's shape")

        if quantum_numbers is None:
            quantum_numbers = [sum((c.conj().T @ c for c in cs), sp.csr_matrix((dim, dim)))]
        labels = []
        for q in quantum_numbers:
            q = sp.csr_matrix(q)
            d = q.diagonal()
            if (q - sp.diags(d)).count_nonzero() != 0:
                raise ValueError("quantum number operators must be diagonal in the Fock basis")
            labels.append(np.round(np.real(d), 8))
        label_arr = np.stack(labels, axis=1)
        _, block_of = np.unique(label_arr, axis=0, return_inverse=True)
        block_of = np.asarray(block_of).reshape(-1)
        n_blocks = int(block_of.max()) + 1
        members = [np.nonzero(block_of == b)[0] for b in range(n_blocks)]

        coo = h.tocoo()
        off = (block_of[coo.row] != block_of[coo.col]) & (np.abs(coo.data) > tol)
        if np.any(off):
            raise ValueError("hamiltonian is not block diagonal in the given quantum numbers")

        hamiltonians = [h[idx][:, idx] for idx in members]
        operators: dict[tuple[bool, int], dict[int, tuple[int, np.ndarray]]] = {}
        for n, c in enumerate(cs):
            ops_c: dict[int, tuple[int, np.ndarray]] = {}
            ops_cdag: dict[int, tuple[int, np.ndarray]] = {}
            for src, idx in enumerate(members):
                sub = c[:, idx].tocoo()
                rows = sub.row[np.abs(sub.data) > tol]
                if rows.size == 0:
                    continue
                targets = np.unique(block_of[rows])
                if targets.size != 1:
                    raise ValueError(f"operator {n} maps block {src} into several blocks {targets.tolist()}")
                tgt = int(targets[0])
                if tgt in ops_cdag:
                    raise ValueError(f"operator {n} maps several blocks into block {tgt}")
                mat = c[members[tgt]][:, idx].toarray()
                ops_c[src] = (tgt, mat)
                ops_cdag[tgt] = (src, mat.conj().T)
            operators[(False, n)] = ops_c
            operators[(True, n)] = ops_cdag

        return cls.from_blocks(hamiltonians, operators, n_operators=len(cs))

    # ------------------------------------------------------------------
    @property
    def n_subspaces(self) -> int:
        return len(self._eigensystems)

    @property
    def n_operators(self) -> int:
        return int(self._connect.shape[1])

    @property
    def eigensystems(self) -> tuple[EigenSystem, ...]:
        return self._eigensystems

    @property
    def e_min(self) -> np.ndarray:
        return self._e_min

    @property
    def is_complex(self) -> bool:
        return bool(self._is_complex)

    @property
    def dim(self) -> int:
        return int(sum(es.size for es in self._eigensystems))

    def connect(self, dagger: bool, linear_index: int, block: int) -> int:
        """Target block of the operator acting on `block`, or FORBIDDEN."""

        block = int(block)
        if block < 0:
            return FORBIDDEN
        linear_index = int(linear_index)
        if not 0 <= linear_index < self._connect.shape[1]:
            raise ValueError(f"operator index {linear_index} out of range (n_operators={self._connect.shape[1]})")
        return int(self._connect[int(bool(dagger)), linear_index, block])

    def connectivity_table(self) -> np.ndarray:
        """int32 array (2, n_operators, n_subspaces); axis 0 is (annihilation, creation)."""

        return self._connect

    def apply_operator(self, dagger: bool, linear_index: int, state: BlockState) -> BlockState:
        if state.is_null:
            return state
        key = (bool(dagger), int(linear_index))
        row = self._table.get(key)
        if row is None:
            raise ValueError(f"unknown operator (dagger={key[0]}, linear_index={key[1]})")
        entry = row[int(state.block)]
        if entry is None:
            return BlockState.null()
        tgt, mat = entry
        return BlockState(block=tgt, vec=np.asarray(mat @ state.vec))

    def eigenstate(self, block: int, k: int) -> BlockState:
        u = self._eigensystems[int(block)].unitary
        return BlockState(block=int(block), vec=np.array(u[:, int(k)], copy=True))

    def partition_function(self, beta: float) -> float:
        """sum_b sum_k exp(-beta E_bk)."""

        return float(sum(np.sum(np.exp(-float(beta) * es.eigenvalues)) for es in self._eigensystems))
