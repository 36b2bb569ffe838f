"""Per-evaluation record of activations, gradients and timings."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, List, Optional

from .types import Activation, Array


@dataclass
class LedgerEntry:
    """One layer boundary.

    ``ledger[0]`` holds the network input and ``ledger[i + 1]`` the output of
    layer ``i``.  Per-layer records (``dzdw``, ``time``, ``backward_time``) of
    layer ``i`` live in its input slot ``ledger[i]``; forward auxiliary state of
    layer ``i`` lives in its output slot ``ledger[i + 1].aux``.
    """

    x: Activation = None
    dzdx: Optional[Array] = None
    dzdw: Optional[List[Optional[Array]]] = None
    aux: Optional[tuple] = None
    aux_bwd: Optional[tuple] = None
    time: float = 0.0
    backward_time: float = 0.0


@dataclass
class Ledger:
    """Fixed-length sequence of :class:`LedgerEntry` (layers + 1)."""

    entries: List[LedgerEntry] = field(default_factory=list)

    @classmethod
    def allocate(cls, n_layers: int) -> "Ledger":
        return cls([LedgerEntry() for _ in range(n_layers + 1)])

    def __len__(self) -> int:
        return len(self.entries)

    def __getitem__(self, index: int) -> LedgerEntry:
        return self.entries[index]

    def __iter__(self) -> Iterator[LedgerEntry]:
        return iter(self.entries)

    @property
    def output(self) -> Activation:
        return self.entries[-1].x


__all__ = ["Ledger", "LedgerEntry"]
