from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class OperatorInsertion:
    """One fundamental operator c (dagger=False) or c^dagger (dagger=True) at imaginary time `time`."""

    time: float
    dagger: bool
    linear_index: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "time", float(self.time))
        object.__setattr__(self, "dagger", bool(self.dagger))
        object.__setattr__(self, "linear_index", int(self.linear_index))
        if self.linear_index < 0:
            raise ValueError("linear_index must be >= 0")


@dataclass(frozen=True)
class GapTable:
    """Flattened per-gap table of a configuration, in ascending-time order.

    Attributes
    ----------
    dtau0
        Time from 0 to the first insertion (beta for an empty configuration).
    dtau
        float64 array of shape (n,): gap after insertion i (to the next one, or
        to beta after the last).
    dagger
        bool array of shape (n,).
    linear_index
        int32 array of shape (n,).
    """

    dtau0: float
    dtau: np.ndarray
    dagger: np.ndarray
    linear_index: np.ndarray

    def __len__(self) -> int:
        return int(self.dtau.size)


@dataclass(frozen=True)
class Configuration:
    """Sampled configuration: insertions stored by strictly descending time on [0, beta]."""

    beta: float
    insertions: tuple[OperatorInsertion, ...] = ()

    def __post_init__(self) -> None:
        beta = float(self.beta)
        if not np.isfinite(beta) or beta <= 0.0:
            raise ValueError("beta must be > 0")
        ins = tuple(self.insertions)
        for op in ins:
            if not isinstance(op, OperatorInsertion):
                raise TypeError("insertions must be OperatorInsertion instances")
            if not (0.0 < op.time <= beta):
                raise ValueError(f"insertion time {op.time} outside (0, beta={beta}]")
        for a, b in zip(ins[:-1], ins[1:]):
            if not a.time > b.time:
                raise ValueError("insertions must be ordered by strictly descending time")
        object.__setattr__(self, "beta", beta)
        object.__setattr__(self, "insertions", ins)

    @classmethod
    def from_unsorted(cls, beta: float, insertions: Iterable[OperatorInsertion]) -> "Configuration":
        ins = sorted(insertions, key=lambda op: op.time, reverse=True)
        return cls(beta=beta, insertions=tuple(ins))

    def __len__(self) -> int:
        return len(self.insertions)

    def __iter__(self) -> Iterator[OperatorInsertion]:
        return iter(self.insertions)

    def time_ordered(self) -> Iterator[OperatorInsertion]:
        """Insertions in application order (ascending time)."""

        return reversed(self.insertions)

    def gap_table(self) -> GapTable:
        return build_gap_table(self)


def build_gap_table(config: Configuration) -> GapTable:
    ops = list(config.time_ordered())
    n = len(ops)
    beta = float(config.beta)

    dtau = np.empty(n, dtype=np.float64)
    dagger = np.empty(n, dtype=np.bool_)
    linear_index = np.empty(n, dtype=np.int32)
    for i, op in enumerate(ops):
        t_next = beta if i + 1 == n else ops[i + 1].time
        dtau[i] = t_next - op.time
        dagger[i] = op.dagger
        linear_index[i] = op.linear_index

    dtau0 = beta if n == 0 else float(ops[0].time)
    return GapTable(dtau0=dtau0, dtau=dtau, dagger=dagger, linear_index=linear_index)
