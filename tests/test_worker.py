"""Tests for the atomic trace worker."""

from __future__ import annotations

import io
import math

import numpy as np
import pytest
import scipy.linalg

from cthyb_trace.configuration import Configuration, OperatorInsertion
from cthyb_trace.exp_h import ExpHNoEmin
from cthyb_trace.fermion import hubbard_atom, spin_numbers
from cthyb_trace.histograms import HistogramRegistry
from cthyb_trace.sorted_spaces import SortedSpaces
from cthyb_trace.worker import (
    HIST_FIRST_TERM,
    HIST_FULL_TRACE,
    HIST_WINNER,
    AtomicTraceWorker,
    TraceConsistencyError,
    atomic_trace,
)

from _trace_models import random_pair_configuration


class _CountingExpH(ExpHNoEmin):
    def __init__(self, sosp, **kwargs):
        super().__init__(sosp, **kwargs)
        self.calls = 0

    def apply_no_emin(self, state, dtau):
        self.calls += 1
        return super().apply_no_emin(state, dtau)


class _BrokenRegistry(HistogramRegistry):
    def record(self, label, value):
        raise OSError("histogram sink unavailable")


def _brute_force_trace(h, cs, config: Configuration) -> float:
    hd = h.toarray()
    m = np.eye(hd.shape[0])
    prev = 0.0
    for op in config.time_ordered():
        m = scipy.linalg.expm(-(op.time - prev) * hd) @ m
        c = cs[op.linear_index].toarray()
        m = (c.conj().T if op.dagger else c) @ m
        prev = op.time
    m = scipy.linalg.expm(-(config.beta - prev) * hd) @ m
    return float(np.trace(m))


def _two_orbital_atom():
    h, cs = hubbard_atom(2, u=3.0, mu=1.5, j_hund=0.4, hopping=np.array([[0.0, 0.35], [0.35, 0.0]]))
    return h, cs, SortedSpaces.from_fock_space(h, cs, spin_numbers(cs))


def test_two_block_partition_function():
    """An empty configuration on two blocks gives 1 + e^-2 + e^-1."""
    sosp = SortedSpaces.from_blocks([np.diag([0.0, 1.0]), np.array([[0.5]])], {})
    z = atomic_trace(Configuration(beta=2.0), sosp)
    assert z == pytest.approx(math.exp(0.0) + math.exp(-2.0) + math.exp(-1.0), rel=1e-14)
    assert z == pytest.approx(1.5032, abs=1e-4)


def test_empty_configuration_gives_partition_function():
    """An empty configuration gives the partition function."""
    h, _, sosp = _two_orbital_atom()
    z_full = float(np.sum(np.exp(-2.0 * np.linalg.eigvalsh(h.toarray()))))
    z = atomic_trace(Configuration(beta=2.0), sosp)
    assert z == pytest.approx(z_full, rel=1e-12)
    assert z == pytest.approx(sosp.partition_function(2.0), rel=1e-12)


def test_trace_matches_full_fock_space_product():
    """The trace equals the brute-force Fock-space product."""
    h, cs = hubbard_atom(1, u=2.0, mu=1.0)
    sosp = SortedSpaces.from_fock_space(h, cs, spin_numbers(cs))
    rng = np.random.default_rng(2024)
    for _ in range(10):
        cfg = random_pair_configuration(rng, beta=5.0, n_modes=2, pairs=2)
        ref = _brute_force_trace(h, cs, cfg)
        val = atomic_trace(cfg, sosp)
        assert val == pytest.approx(ref, rel=1e-9, abs=1e-12)


def test_trace_with_hopping_matches_full_fock_space_product():
    """Same as above for a two-orbital atom with hopping."""
    h, cs, sosp = _two_orbital_atom()
    rng = np.random.default_rng(5)
    for _ in range(6):
        cfg = random_pair_configuration(rng, beta=4.0, n_modes=4, pairs=1)
        ref = _brute_force_trace(h, cs, cfg)
        val = atomic_trace(cfg, sosp)
        assert val == pytest.approx(ref, rel=1e-9, abs=1e-12)


def test_pruning_only_drops_negligible_terms():
    """Pruning and the epsilon cutoff do not change the trace."""
    _, _, sosp = _two_orbital_atom()
    rng = np.random.default_rng(17)
    for _ in range(8):
        cfg = random_pair_configuration(rng, beta=20.0, n_modes=4, pairs=2)
        pruned = atomic_trace(cfg, sosp)
        exact = atomic_trace(cfg, sosp, bound_margin=math.inf, epsilon=0.0)
        assert pruned == pytest.approx(exact, rel=1e-12, abs=1e-300)


def test_krylov_propagation_gives_same_trace():
    """The Krylov path gives the same trace as the dense path."""
    _, _, sosp = _two_orbital_atom()
    rng = np.random.default_rng(8)
    cfg = random_pair_configuration(rng, beta=3.0, n_modes=4, pairs=1)
    dense = atomic_trace(cfg, sosp, small_matrix_size=64)
    krylov = atomic_trace(cfg, sosp, small_matrix_size=0)
    assert krylov == pytest.approx(dense, rel=1e-9, abs=1e-13)


def test_structural_zero_skips_exact_pass():
    """If no block returns, the exact pass does no work."""
    h, cs = hubbard_atom(1, u=2.0, mu=1.0)
    sosp = SortedSpaces.from_fock_space(h, cs, spin_numbers(cs))
    cfg = Configuration(beta=2.0, insertions=(OperatorInsertion(1.0, True, 0),))
    exp_h = _CountingExpH(sosp)
    worker = AtomicTraceWorker(cfg, sosp, exp_h=exp_h, make_histograms=True)

    ev = worker.evaluate()
    assert ev.trace == 0.0
    assert isinstance(ev.trace, float)
    assert ev.structural_zero
    assert ev.winner_block is None
    assert ev.n_states_evaluated == 0
    assert exp_h.calls == 0
    assert worker.histograms.get(HIST_WINNER).n_data == 0


def test_inconsistent_operator_table_is_fatal():
    """A partial trace above 1 + tol raises TraceConsistencyError."""
    ten = np.array([[10.0]])
    sosp = SortedSpaces.from_blocks(
        [np.array([[0.0]]), np.array([[0.0]])],
        {(True, 0): {0: (1, ten)}, (False, 0): {1: (0, ten)}},
    )
    cfg = Configuration(beta=1.0, insertions=(OperatorInsertion(0.7, False, 0), OperatorInsertion(0.3, True, 0)))
    with pytest.raises(TraceConsistencyError) as info:
        atomic_trace(cfg, sosp)
    assert isinstance(info.value, RuntimeError)
    assert info.value.block == 0
    assert abs(info.value.value) == pytest.approx(100.0)


def test_nan_partial_trace_is_fatal():
    """A NaN partial trace raises TraceConsistencyError."""
    bad = np.array([[np.nan]])
    sosp = SortedSpaces.from_blocks(
        [np.array([[0.0]]), np.array([[0.0]])],
        {(True, 0): {0: (1, bad)}, (False, 0): {1: (0, bad)}},
    )
    cfg = Configuration(beta=1.0, insertions=(OperatorInsertion(0.7, False, 0), OperatorInsertion(0.3, True, 0)))
    with pytest.raises(TraceConsistencyError) as info:
        atomic_trace(cfg, sosp)
    assert np.isnan(info.value.value)


def test_epsilon_cutoff_stops_after_dominant_block():
    """Blocks suppressed below epsilon are skipped."""
    sosp = SortedSpaces.from_blocks([np.array([[0.0]]), np.array([[40.0]])], {})
    cfg = Configuration(beta=1.0)

    ev = AtomicTraceWorker(cfg, sosp).evaluate()
    assert ev.n_blocks_evaluated == 1
    assert ev.trace == 1.0

    ev_all = AtomicTraceWorker(cfg, sosp, epsilon=0.0).evaluate()
    assert ev_all.n_blocks_evaluated == 2
    assert ev_all.trace == pytest.approx(1.0 + math.exp(-40.0), rel=1e-15)


def test_evaluation_is_deterministic():
    """Repeated evaluations give identical results."""
    _, _, sosp = _two_orbital_atom()
    cfg = random_pair_configuration(np.random.default_rng(99), beta=6.0, n_modes=4, pairs=2)
    worker = AtomicTraceWorker(cfg, sosp)
    a = worker()
    b = worker()
    c = atomic_trace(cfg, sosp)
    assert a == b == c


def test_first_term_is_lowest_state_of_winning_block():
    """first_term comes from the lowest-bound block."""
    sosp = SortedSpaces.from_blocks([np.diag([0.3, 1.0]), np.array([[0.1]])], {})
    ev = AtomicTraceWorker(Configuration(beta=1.0), sosp).evaluate()
    assert ev.winner_block == 1
    assert ev.first_term == pytest.approx(math.exp(-0.1))
    assert ev.n_returning == 2
    assert ev.reference_bound == pytest.approx(0.3)


def test_histograms_do_not_change_result():
    """Diagnostics are recorded without changing the trace."""
    _, _, sosp = _two_orbital_atom()
    rng = np.random.default_rng(31)
    registry = HistogramRegistry()
    configs = [random_pair_configuration(rng, beta=5.0, n_modes=4, pairs=1) for _ in range(4)]
    for cfg in configs:
        plain = atomic_trace(cfg, sosp)
        with_hist = atomic_trace(cfg, sosp, make_histograms=True, histograms=registry)
        assert plain == with_hist

    assert set(registry.labels) == {HIST_FIRST_TERM, HIST_FULL_TRACE, HIST_WINNER}
    assert registry.get(HIST_WINNER).n_bins == sosp.n_subspaces
    assert registry.get(HIST_WINNER).n_data == len(configs)
    assert registry.get(HIST_FULL_TRACE).n_data == len(configs)


def test_zero_trace_skips_first_term_ratio():
    """A zero trace records no first-term ratio."""
    zero = np.array([[0.0]])
    sosp = SortedSpaces.from_blocks(
        [np.array([[0.0]]), np.array([[0.0]])],
        {(True, 0): {0: (1, zero)}, (False, 0): {1: (0, zero)}},
    )
    cfg = Configuration(beta=1.0, insertions=(OperatorInsertion(0.7, False, 0), OperatorInsertion(0.3, True, 0)))
    worker = AtomicTraceWorker(cfg, sosp, make_histograms=True)
    assert worker() == 0.0
    assert worker.histograms.get(HIST_FIRST_TERM).n_data == 0
    assert worker.histograms.get(HIST_FULL_TRACE).counts[0] == 1
    assert worker.histograms.get(HIST_WINNER).counts.tolist() == [1, 0]


def test_diagnostics_failure_only_warns():
    """A failing diagnostics sink warns and the trace is still returned."""
    sosp = SortedSpaces.from_blocks([np.diag([0.0, 1.0]), np.array([[0.5]])], {})
    worker = AtomicTraceWorker(Configuration(beta=2.0), sosp, make_histograms=True, histograms=_BrokenRegistry())
    with pytest.warns(RuntimeWarning, match="not recorded"):
        z = worker()
    assert z == pytest.approx(1.0 + math.exp(-2.0) + math.exp(-1.0))


def test_complex_model_accumulates_complex_trace():
    """Complex eigenbases give a complex trace."""
    h = np.array([[1.0, 0.5j], [-0.5j, 2.0]])
    sosp = SortedSpaces.from_blocks([h, np.array([[0.25]])], {})
    assert sosp.is_complex
    z = atomic_trace(Configuration(beta=1.5), sosp)
    assert isinstance(z, complex)
    expected = float(np.sum(np.exp(-1.5 * np.linalg.eigvalsh(h)))) + math.exp(-1.5 * 0.25)
    assert z.real == pytest.approx(expected, rel=1e-12)
    assert abs(z.imag) < 1e-12


def test_worker_follows_reassigned_configuration():
    """The worker evaluates whatever configuration it currently holds."""
    sosp = SortedSpaces.from_blocks([np.diag([0.0, 1.0]), np.array([[0.5]])], {})
    worker = AtomicTraceWorker(Configuration(beta=2.0), sosp)
    z2 = worker()
    worker.configuration = Configuration(beta=1.0)
    z1 = worker()
    assert z1 == pytest.approx(1.0 + math.exp(-1.0) + math.exp(-0.5))
    assert z1 != z2


def test_verbose_reporting_and_histogram_files(tmp_path):
    """verbose output, dump_flags and histogram files."""
    sosp = SortedSpaces.from_blocks([np.diag([0.0, 1.0]), np.array([[0.5]])], {})
    out = io.StringIO()
    worker = AtomicTraceWorker(Configuration(beta=2.0), sosp, verbose=2, make_histograms=True, stdout=out)
    worker.dump_flags()
    worker()
    text = out.getvalue()
    assert "AtomicTraceWorker" in text
    assert "bound_margin = 35.0" in text
    assert "atomic trace: returning=2" in text

    paths = worker.save_histograms(tmp_path)
    names = sorted(p.name for p in paths)
    assert names == ["hist_BS1.dat", "hist_FirstTerm_FullTrace.dat", "hist_FullTrace_ExpSumMin.dat"]
    data = np.loadtxt(tmp_path / "hist_BS1.dat")
    assert data.shape == (2, 2)
    assert data[:, 1].tolist() == [1.0, 0.0]

    quiet = AtomicTraceWorker(Configuration(beta=2.0), sosp)
    with pytest.raises(RuntimeError):
        quiet.save_histograms(tmp_path)
