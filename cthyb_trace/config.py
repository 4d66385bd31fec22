from __future__ import annotations

import contextlib
from dataclasses import dataclass, replace
import math
from typing import Any


_BOUND_BACKENDS = ("auto", "python", "numba")


@dataclass(frozen=True)
class TraceConfig:
    """Global defaults for the atomic trace evaluation."""

    # Blocks whose bound exceeds the reference bound by more than this are
    # dropped (exp(-35) ~ 1e-15 relative to the reference block).
    bound_margin: float = 35.0
    # Stop once exp(-bound) < |trace| * epsilon.
    epsilon: float = 1.0e-15
    # |<psi0|...|psi0>_no_emin| must stay <= 1 + consistency_tol.
    consistency_tol: float = 1.0e-7

    # Blocks up to this dimension are propagated with the dense eigen
    # decomposition, larger ones with a Krylov expm action.
    small_matrix_size: int = 64

    # None -> CTHYB_TRACE_BOUND_BACKEND (default "auto").
    bound_backend: str | None = None

    make_histograms: bool = False
    verbose: int = 0

    def __post_init__(self) -> None:
        if math.isnan(float(self.bound_margin)) or float(self.bound_margin) < 0.0:
            raise ValueError("bound_margin must be >= 0")
        if math.isnan(float(self.epsilon)) or float(self.epsilon) < 0.0:
            raise ValueError("epsilon must be >= 0")
        if math.isnan(float(self.consistency_tol)) or float(self.consistency_tol) < 0.0:
            raise ValueError("consistency_tol must be >= 0")
        if int(self.small_matrix_size) < 0:
            raise ValueError("small_matrix_size must be >= 0")
        if self.bound_backend is not None and str(self.bound_backend).lower() not in _BOUND_BACKENDS:
            raise ValueError(f"bound_backend must be one of {_BOUND_BACKENDS} (got {self.bound_backend!r})")


_TRACE_CONFIG = TraceConfig()


def get_trace_config() -> TraceConfig:
    return _TRACE_CONFIG


def set_trace_config(**kwargs: Any) -> TraceConfig:
    """Update the global trace config."""

    global _TRACE_CONFIG
    _TRACE_CONFIG = replace(_TRACE_CONFIG, **kwargs)
    return _TRACE_CONFIG


@contextlib.contextmanager
def trace_config(**kwargs: Any):
    """Temporarily override the global trace config."""

    global _TRACE_CONFIG
    prev = _TRACE_CONFIG
    _TRACE_CONFIG = replace(_TRACE_CONFIG, **kwargs)
    try:
        yield _TRACE_CONFIG
    finally:
        _TRACE_CONFIG = prev


def resolve_config(config: TraceConfig | None = None, **overrides: Any) -> TraceConfig:
    """Return `config` (or the global config) with non-None `overrides` applied."""

    cfg = _TRACE_CONFIG if config is None else config
    updates = {k: v for k, v in overrides.items() if v is not None}
    if updates:
        cfg = replace(cfg, **updates)
    return cfg
