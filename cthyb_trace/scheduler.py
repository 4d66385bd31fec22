from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

import numpy as np

from .bounds import BlockBounds


@dataclass(frozen=True)
class BlockSchedule:
    """Returning blocks sorted by ascending bound (largest possible weight first).

    The continuation rule ``exp(-bound) >= |running_total| * epsilon`` bounds a
    single block's magnitude, not the tail sum; with strong cancellation in the
    running total it may stop marginally early.
    """

    entries: tuple[tuple[float, int], ...]
    epsilon: float = 1.0e-15

    @classmethod
    def from_bounds(cls, bounds: BlockBounds, *, epsilon: float = 1.0e-15) -> "BlockSchedule":
        returning = bounds.returning
        pairs = [(float(bounds.bounds[n]), int(n)) for n in range(bounds.n_blocks) if bool(returning[n])]
        pairs.sort()
        return cls(entries=tuple(pairs), epsilon=float(epsilon))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[tuple[float, int]]:
        return iter(self.entries)

    @property
    def winner(self) -> int | None:
        if not self.entries:
            return None
        return self.entries[0][1]

    def keep_going(self, bound: float, running_total) -> bool:
        with np.errstate(over="ignore"):
            weight = float(np.exp(-float(bound)))
        return weight >= abs(running_total) * self.epsilon
