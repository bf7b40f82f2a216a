"""Deterministic PRNG and the cell shuffle built on it.

The generator is the classic ANSI C linear-congruential recurrence. It is
modelled as an immutable value so that two mapping builds can never share
a hidden stream.
"""

from dataclasses import dataclass
from typing import Iterator, MutableSequence

from engine.seed import MASK_32

LCG_MULTIPLIER = 1103515245
LCG_INCREMENT = 12345
OUTPUT_MASK = 0x7FFFFFFF


@dataclass(frozen=True)
class Lcg:
    """32-bit LCG state. ``step()`` returns (value, next_generator)."""

    state: int = 0

    def __post_init__(self):
        if not 0 <= self.state <= MASK_32:
            raise ValueError(f"LCG state {self.state} is not a 32-bit unsigned value")

    def step(self) -> tuple[int, "Lcg"]:
        new_state = (self.state * LCG_MULTIPLIER + LCG_INCREMENT) & MASK_32
        return new_state & OUTPUT_MASK, Lcg(new_state)


def lcg_stream(seed: int) -> Iterator[int]:
    """Yield the (endless) output sequence for a seed."""
    gen = Lcg(seed)
    while True:
        value, gen = gen.step()
        yield value


def shuffle(items: MutableSequence, seed: int) -> None:
    """Forward Fisher-Yates shuffle in place, driven by the LCG.

    The swap target is always at or after the current index, so the
    resulting order depends only on (seed, len(items)).
    """
    length = len(items)
    stream = lcg_stream(seed)
    for i in range(length):
        j = i + next(stream) % (length - i)
        items[i], items[j] = items[j], items[i]


def permutation(length: int, seed: int) -> list[int]:
    """Return the index order ``shuffle`` produces for a list of this length."""
    order = list(range(length))
    shuffle(order, seed)
    return order
