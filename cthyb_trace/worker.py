"""Atomic trace of one CT-HYB configuration on a block-diagonal eigenbasis.

The evaluation runs in three passes:

1. bound pass (`cthyb_trace.bounds`): per block, sum_i dtau_i * E_min along
   the operator path; blocks that do not return to themselves, or whose bound
   exceeds the reference by more than `bound_margin`, are dropped,
2. scheduling (`cthyb_trace.scheduler`): surviving blocks sorted by bound,
3. exact pass: every eigenstate of a surviving block is propagated through
   the operator sequence with exp(-dtau (H - E_min)); the missing
   exp(-bound) factor is applied afterwards.

Each no-emin partial trace is a product of contractions and must satisfy
|<psi0|...|psi0>| <= 1; a violation means the eigenbasis or operator tables
are broken and aborts the evaluation with `TraceConsistencyError`.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
import sys
from typing import Any, Callable
import warnings

import numpy as np

from .bounds import estimate_bounds
from .config import TraceConfig, resolve_config
from .configuration import Configuration, GapTable, build_gap_table
from .exp_h import ExpHNoEmin
from .histograms import HistogramRegistry
from .scheduler import BlockSchedule
from .state import BlockState, dot_product

HIST_FIRST_TERM = "FirstTerm_FullTrace"
HIST_FULL_TRACE = "FullTrace_ExpSumMin"
HIST_WINNER = "WinningBlock"


class TraceConsistencyError(RuntimeError):
    """A no-emin partial trace exceeded 1 + tolerance in magnitude."""

    def __init__(self, block: int, state_index: int, value: Any, tol: float) -> None:
        self.block = int(block)
        self.state_index = int(state_index)
        self.value = value
        self.tol = float(tol)
        super().__init__(
            f"|partial trace (no emin)| = {abs(value):.15g} > 1 + {self.tol:g} "
            f"(block {self.block}, state {self.state_index}); "
            "the eigenbasis / connectivity / operator tables are inconsistent"
        )


@dataclass(frozen=True)
class TraceEvaluation:
    """Outcome of one trace evaluation.

    Attributes
    ----------
    trace
        The atomic trace (float, or complex for complex models).
    first_term
        Contribution of the first evaluated state of the lowest-bound block.
    reference_bound
        Bound of the walk started from block 0.
    winner_block
        Lowest-bound returning block, or None for a structural zero.
    n_returning
        Number of blocks that return to themselves after the bound pass.
    n_blocks_evaluated, n_states_evaluated
        Work done by the exact pass.
    """

    trace: Any
    first_term: Any
    reference_bound: float
    winner_block: int | None
    n_returning: int
    n_blocks_evaluated: int
    n_states_evaluated: int

    @property
    def structural_zero(self) -> bool:
        return self.n_returning == 0


def _exp_neg(x: float) -> float:
    with np.errstate(over="ignore"):
        return float(np.exp(-float(x)))


class AtomicTraceWorker:
    """Computes the atomic trace of `configuration` on the eigenbasis `sosp`.

    The configuration is held by reference; the sampler may modify it between
    calls and every call recomputes from scratch.

    Parameters
    ----------
    configuration
        Sampled operator configuration.
    sosp
        Eigenbasis exposing ``n_subspaces``, ``eigensystems``, ``connect``,
        ``apply_operator`` and ``eigenstate`` (see `SortedSpaces`).
    config
        Tunables; defaults to the global `TraceConfig`. Keyword overrides
        (e.g. ``make_histograms=True``) are applied on top.
    exp_h
        Propagator with ``apply_no_emin(state, dtau)``; defaults to `ExpHNoEmin`.
    dot
        Inner product of two states; defaults to `dot_product`.
    histograms
        Registry receiving the diagnostics when ``make_histograms`` is set
        (a private registry is created if None).
    """

    def __init__(
        self,
        configuration: Configuration,
        sosp,
        *,
        config: TraceConfig | None = None,
        exp_h=None,
        dot: Callable[[BlockState, BlockState], Any] | None = None,
        histograms: HistogramRegistry | None = None,
        stdout=None,
        **overrides: Any,
    ) -> None:
        self.cfg = resolve_config(config, **overrides)
        self.configuration = configuration
        self.sosp = sosp
        self.exp_h = ExpHNoEmin(sosp, small_matrix_size=self.cfg.small_matrix_size) if exp_h is None else exp_h
        self.dot = dot_product if dot is None else dot
        self.stdout = sys.stdout if stdout is None else stdout
        self._zero = 0j if bool(getattr(sosp, "is_complex", False)) else 0.0

        self.histograms: HistogramRegistry | None = None
        if self.cfg.make_histograms:
            self.histograms = HistogramRegistry() if histograms is None else histograms
            self.histograms.register(HIST_FIRST_TERM, 0.0, 10.0, 100, "hist_FirstTerm_FullTrace.dat")
            self.histograms.register(HIST_FULL_TRACE, 0.0, 10.0, 100, "hist_FullTrace_ExpSumMin.dat")
            self.histograms.register_indices(HIST_WINNER, int(sosp.n_subspaces), "hist_BS1.dat")

    def dump_flags(self, verbose: int | None = None):
        v = self.cfg.verbose if verbose is None else int(verbose)
        if v <= 0:
            return self
        out = self.stdout
        print("AtomicTraceWorker", file=out)
        print(f"n_subspaces = {int(self.sosp.n_subspaces)}", file=out)
        for f in fields(self.cfg):
            print(f"{f.name} = {getattr(self.cfg, f.name)}", file=out)
        print(f"propagator = {type(self.exp_h).__name__}", file=out)
        return self

    def __call__(self):
        return self.evaluate().trace

    def _partial_trace_no_emin(self, block: int, k: int, gaps: GapTable):
        psi0 = self.sosp.eigenstate(block, k)
        psi = self.exp_h.apply_no_emin(psi0.copy(), gaps.dtau0)
        for i in range(len(gaps)):
            psi = self.sosp.apply_operator(bool(gaps.dagger[i]), int(gaps.linear_index[i]), psi)
            psi = self.exp_h.apply_no_emin(psi, float(gaps.dtau[i]))
        return self.dot(psi0, psi)

    def evaluate(self, configuration: Configuration | None = None) -> TraceEvaluation:
        cfg = self.cfg
        config = self.configuration if configuration is None else configuration
        gaps = build_gap_table(config)
        bounds = estimate_bounds(gaps, self.sosp, margin=cfg.bound_margin, backend=cfg.bound_backend)

        if not bounds.any_returning:
            # Structurally zero: no block comes back to itself.
            result = TraceEvaluation(
                trace=self._zero,
                first_term=self._zero,
                reference_bound=bounds.reference_bound,
                winner_block=None,
                n_returning=0,
                n_blocks_evaluated=0,
                n_states_evaluated=0,
            )
            self._report(result)
            return result

        schedule = BlockSchedule.from_bounds(bounds, epsilon=cfg.epsilon)
        max_abs = 1.0 + float(cfg.consistency_tol)

        full_trace = self._zero
        first_term = self._zero
        n_blocks = 0
        n_states = 0
        for bound, block in schedule:
            if not schedule.keep_going(bound, full_trace):
                break
            exp_no_emin = _exp_neg(bound)
            for k in range(int(self.sosp.eigensystems[block].size)):
                partial_no_emin = self._partial_trace_no_emin(block, k, gaps)
                if not abs(partial_no_emin) <= max_abs:
                    raise TraceConsistencyError(block, k, partial_no_emin, cfg.consistency_tol)
                partial = partial_no_emin * exp_no_emin
                if n_states == 0:
                    first_term = partial
                full_trace += partial
                n_states += 1
            n_blocks += 1

        result = TraceEvaluation(
            trace=full_trace,
            first_term=first_term,
            reference_bound=bounds.reference_bound,
            winner_block=schedule.winner,
            n_returning=len(schedule),
            n_blocks_evaluated=n_blocks,
            n_states_evaluated=n_states,
        )
        if self.histograms is not None:
            self._record_histograms(result)
        self._report(result)
        return result

    def _record_histograms(self, result: TraceEvaluation) -> None:
        hist = self.histograms
        try:
            abs_trace = abs(result.trace)
            if abs_trace > 0.0:
                hist.record(HIST_FIRST_TERM, abs(result.first_term) / abs_trace)
            scale = _exp_neg(result.reference_bound)
            if scale > 0.0:
                hist.record(HIST_FULL_TRACE, abs_trace / scale)
            hist.record(HIST_WINNER, float(result.winner_block))
        except Exception as e:
            warnings.warn(f"trace diagnostics not recorded: {type(e).__name__}: {e}", RuntimeWarning, stacklevel=3)

    def _report(self, result: TraceEvaluation) -> None:
        if int(self.cfg.verbose) < 2:
            return
        print(
            f"atomic trace: returning={result.n_returning} blocks={result.n_blocks_evaluated} "
            f"states={result.n_states_evaluated} trace={result.trace}",
            file=self.stdout,
        )

    def save_histograms(self, directory=None):
        if self.histograms is None:
            raise RuntimeError("histograms are disabled (make_histograms=False)")
        return self.histograms.save_all(directory)


def atomic_trace(configuration: Configuration, sosp, **kwargs: Any):
    """One-shot atomic trace; keyword arguments are passed to `AtomicTraceWorker`."""

    return AtomicTraceWorker(configuration, sosp, **kwargs)()
