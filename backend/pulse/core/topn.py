"""Bounded top-N counter.

Keeps ``capacity * tracking_factor`` monitored entries and reports the best
``capacity``. While the number of distinct values fits in the monitored set
every count is exact. Beyond that, the lowest-count entry is evicted (ties:
oldest insertion first) and the newcomer inherits its count plus one, the
Space-Saving rule, which biases the structure towards heavy hitters.
"""

from dataclasses import dataclass

from pulse.core.exceptions import CapacityError


@dataclass
class TopEntry:
    value: str
    count: int
    error: int  # upper bound of overestimation
    inserted: int  # insertion sequence, lower is older


class TopN:
    __slots__ = ("capacity", "tracking_capacity", "_entries", "_seq", "evictions")

    def __init__(self, capacity: int = 20, tracking_factor: int = 4):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.tracking_capacity = capacity * max(1, tracking_factor)
        self._entries: dict[str, TopEntry] = {}
        self._seq = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, value: object) -> bool:
        return value in self._entries

    def count(self, value: str) -> int:
        entry = self._entries.get(value)
        return entry.count if entry else 0

    @property
    def is_exact(self) -> bool:
        return self.evictions == 0

    def _reserve(self) -> None:
        if len(self._entries) >= self.tracking_capacity:
            raise CapacityError(f"top-N full at {self.tracking_capacity} entries")

    def _victim(self) -> TopEntry:
        return min(self._entries.values(), key=lambda e: (e.count, e.inserted))

    def add(self, value: str, amount: int = 1) -> None:
        entry = self._entries.get(value)
        if entry is not None:
            entry.count += amount
            return
        try:
            self._reserve()
            floor = 0
        except CapacityError:
            victim = self._victim()
            del self._entries[victim.value]
            self.evictions += 1
            floor = victim.count
        self._entries[value] = TopEntry(
            value=value, count=floor + amount, error=floor, inserted=self._seq
        )
        self._seq += 1

    def top(self, limit: int | None = None) -> list[tuple[str, int]]:
        """Best entries by count desc, earlier insertion first on ties."""
        limit = self.capacity if limit is None else min(limit, self.capacity)
        ranked = sorted(self._entries.values(), key=lambda e: (-e.count, e.inserted))
        return [(e.value, e.count) for e in ranked[:limit]]

