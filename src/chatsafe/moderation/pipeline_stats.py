"""Per-run bookkeeping for the moderation pipeline."""

from __future__ import annotations

import bisect
from collections import Counter
from typing import Dict, List, Set

from chatsafe.datatypes.moderation_datatypes import PipelineOutcome


class SequenceWatermark:
    """
    Track the highest arrival sequence below which every started message finished.

    Messages may finish out of order because side effects run concurrently;
    the watermark only advances over a contiguous prefix of finished messages.
    Sequence numbers do not need to be dense.
    """

    def __init__(self, start: int | None = None) -> None:
        self._value = start
        self._open: List[int] = []
        self._done: Set[int] = set()

    @property
    def value(self) -> int | None:
        return self._value

    def is_behind(self, seq: int) -> bool:
        """True if ``seq`` is at or below the watermark (already fully handled)."""
        return self._value is not None and seq <= self._value

    def start(self, seq: int) -> None:
        bisect.insort(self._open, seq)

    def finish(self, seq: int) -> bool:
        """Mark ``seq`` finished; returns True if the watermark advanced."""
        self._done.add(seq)
        advanced = False
        while self._open and self._open[0] in self._done:
            head = self._open.pop(0)
            self._done.discard(head)
            if self._value is None or head > self._value:
                self._value = head
                advanced = True
        return advanced


class PipelineStats:
    """Outcome counters surfaced by the console ``status`` command."""

    def __init__(self) -> None:
        self.outcomes: Counter[PipelineOutcome] = Counter()
        self.unchecked = 0
        self.duplicates_dropped = 0
        self.in_flight = 0

    def record(self, outcome: PipelineOutcome) -> None:
        self.outcomes[outcome] += 1

    @property
    def processed(self) -> int:
        return sum(self.outcomes.values())

    def snapshot(self) -> Dict[str, int]:
        data = {str(outcome): self.outcomes.get(outcome, 0) for outcome in PipelineOutcome}
        data["unchecked"] = self.unchecked
        data["duplicates_dropped"] = self.duplicates_dropped
        data["in_flight"] = self.in_flight
        return data
