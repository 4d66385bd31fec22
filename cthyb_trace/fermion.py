from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import scipy.sparse as sp


def annihilation_operators(n_modes: int) -> list[sp.csr_matrix]:
    """Jordan-Wigner annihilators c_0..c_{n-1} on the 2^n Fock space.

    Basis state index bit i is the occupation of mode i; c_i carries the sign
    (-1)^(number of occupied modes j < i).
    """

    n_modes = int(n_modes)
    if n_modes < 0:
        raise ValueError("n_modes must be >= 0")
    dim = 1 << n_modes
    states = np.arange(dim, dtype=np.int64)

    out: list[sp.csr_matrix] = []
    for i in range(n_modes):
        src = states[((states >> i) & 1) == 1]
        tgt = src ^ (1 << i)
        parity = np.zeros(src.size, dtype=np.int64)
        for j in range(i):
            parity += (src >> j) & 1
        sign = np.where(parity % 2 == 0, 1.0, -1.0)
        out.append(sp.csr_matrix((sign, (tgt, src)), shape=(dim, dim)))
    return out


def number_operator(c: sp.spmatrix) -> sp.csr_matrix:
    c = sp.csr_matrix(c)
    return sp.csr_matrix(c.conj().T @ c)


def total_number(cs: Sequence[sp.spmatrix]) -> sp.csr_matrix:
    if len(cs) == 0:
        raise ValueError("at least one mode is required")
    dim = int(cs[0].shape[0])
    out = sp.csr_matrix((dim, dim), dtype=np.float64)
    for c in cs:
        out = out + number_operator(c)
    return sp.csr_matrix(out)


def spin_numbers(cs: Sequence[sp.spmatrix]) -> list[sp.csr_matrix]:
    """[N_up, N_down] for modes ordered (orbital, spin)."""

    if len(cs) % 2 != 0:
        raise ValueError("spinful modes come in pairs")
    return [total_number(cs[0::2]), total_number(cs[1::2])]


def hubbard_atom(
    n_orbitals: int,
    *,
    u: float,
    mu: float,
    eps: Sequence[float] | None = None,
    j_hund: float = 0.0,
    hopping: np.ndarray | None = None,
) -> tuple[sp.csr_matrix, list[sp.csr_matrix]]:
    """Multi-orbital atom with density-density Kanamori interaction.

    Modes are ordered (orbital, spin): mode 2*a + s. `hopping[a, b]` adds the
    spin-conserving term t_ab c^dagger_{a s} c_{b s} (symmetrized).

    Returns
    -------
    hamiltonian, annihilators
        CSR Hamiltonian on the Fock space and the list of 2*n_orbitals annihilators.
    """

    n_orbitals = int(n_orbitals)
    if n_orbitals < 1:
        raise ValueError("n_orbitals must be >= 1")
    eps_arr = np.zeros(n_orbitals) if eps is None else np.asarray(eps, dtype=np.float64).ravel()
    if eps_arr.size != n_orbitals:
        raise ValueError("eps must have one entry per orbital")

    cs = annihilation_operators(2 * n_orbitals)
    ns = [number_operator(c) for c in cs]
    dim = 1 << (2 * n_orbitals)
    h = sp.csr_matrix((dim, dim), dtype=np.float64)

    for a in range(n_orbitals):
        for s in range(2):
            h = h + (float(eps_arr[a]) - float(mu)) * ns[2 * a + s]
        h = h + float(u) * (ns[2 * a] @ ns[2 * a + 1])

    u_opp = float(u) - 2.0 * float(j_hund)
    u_same = float(u) - 3.0 * float(j_hund)
    for a in range(n_orbitals):
        for b in range(a + 1, n_orbitals):
            h = h + u_opp * (ns[2 * a] @ ns[2 * b + 1] + ns[2 * a + 1] @ ns[2 * b])
            h = h + u_same * (ns[2 * a] @ ns[2 * b] + ns[2 * a + 1] @ ns[2 * b + 1])

    if hopping is not None:
        t = np.asarray(hopping, dtype=np.float64)
        if t.shape != (n_orbitals, n_orbitals):
            raise ValueError(f"hopping has wrong shape: {t.shape}")
        t = 0.5 * (t + t.T)
        for a in range(n_orbitals):
            for b in range(n_orbitals):
                if a == b or t[a, b] == 0.0:
                    continue
                for s in range(2):
                    h = h + float(t[a, b]) * (cs[2 * a + s].T @ cs[2 * b + s])

    return sp.csr_matrix(h), cs
