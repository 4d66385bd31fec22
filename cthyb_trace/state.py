from __future__ import annotations

from dataclasses import dataclass

import numpy as np

# Connectivity sentinel: the operator annihilates every state of the block.
FORBIDDEN = -1


@dataclass
class BlockState:
    """State vector living in one block, expressed in that block's local basis.

    `block == FORBIDDEN` is the null result of a structurally forbidden operator.
    """

    block: int
    vec: np.ndarray

    @classmethod
    def null(cls) -> "BlockState":
        return cls(block=FORBIDDEN, vec=np.zeros((0,), dtype=np.float64))

    @property
    def is_null(self) -> bool:
        return int(self.block) == FORBIDDEN

    def copy(self) -> "BlockState":
        return BlockState(block=int(self.block), vec=np.array(self.vec, copy=True))


def dot_product(a: BlockState, b: BlockState):
    """<a|b>; states in different blocks (or null states) are orthogonal."""

    if a.is_null or b.is_null or int(a.block) != int(b.block):
        return 0.0
    val = np.vdot(a.vec, b.vec)
    if np.iscomplexobj(val):
        return complex(val)
    return float(val)
