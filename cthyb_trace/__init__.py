"""cthyb_trace: atomic trace evaluation for CT-HYB quantum Monte Carlo."""

from importlib.metadata import PackageNotFoundError, version as _dist_version

from cthyb_trace.bounds import BlockBounds, estimate_bounds, walk_bound
from cthyb_trace.config import TraceConfig, get_trace_config, set_trace_config, trace_config
from cthyb_trace.configuration import Configuration, GapTable, OperatorInsertion, build_gap_table
from cthyb_trace.exp_h import ExpHNoEmin
from cthyb_trace.fermion import annihilation_operators, hubbard_atom, spin_numbers, total_number
from cthyb_trace.histograms import Histogram, HistogramRegistry
from cthyb_trace.scheduler import BlockSchedule
from cthyb_trace.sorted_spaces import EigenSystem, SortedSpaces
from cthyb_trace.state import FORBIDDEN, BlockState, dot_product
from cthyb_trace.worker import AtomicTraceWorker, TraceConsistencyError, TraceEvaluation, atomic_trace

try:
    __version__ = _dist_version("cthyb-trace")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.1.0"

__all__ = [
    "__version__",
    # Core classes
    "AtomicTraceWorker",
    "BlockBounds",
    "BlockSchedule",
    "BlockState",
    "Configuration",
    "EigenSystem",
    "ExpHNoEmin",
    "GapTable",
    "Histogram",
    "HistogramRegistry",
    "OperatorInsertion",
    "SortedSpaces",
    "TraceConfig",
    "TraceConsistencyError",
    "TraceEvaluation",
    "FORBIDDEN",
    # Core functions
    "annihilation_operators",
    "atomic_trace",
    "build_gap_table",
    "dot_product",
    "estimate_bounds",
    "get_trace_config",
    "hubbard_atom",
    "set_trace_config",
    "spin_numbers",
    "total_number",
    "trace_config",
    "walk_bound",
]
