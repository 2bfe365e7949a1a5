"""Data models for clustertop."""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from datetime import datetime

from clustertop.errors import BadParameter


@dataclass(slots=True, frozen=True)
class Point:
    """Immutable single sample of a time series."""

    time: datetime  # UTC, timezone-aware
    value: int


@dataclass(slots=True, frozen=True)
class Series:
    """
    Immutable time series.

    Points are ordered by strictly ascending time. The producer is
    responsible for the ordering; Series never re-sorts.
    """

    points: tuple[Point, ...] = field(default=())

    def __post_init__(self) -> None:
        # Own a tuple so the caller's sequence cannot change the series
        object.__setattr__(self, "points", tuple(self.points))

    @classmethod
    def of(cls, points: Iterable[Point]) -> "Series":
        """Build a Series from any iterable of points."""
        return cls(tuple(points))

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[Point]:
        return iter(self.points)

    def __getitem__(self, index: int) -> Point:
        return self.points[index]

    def values(self) -> list[int]:
        """Get the sample values in order."""
        return [point.value for point in self.points]

    def times(self) -> list[datetime]:
        """Get the sample timestamps in order."""
        return [point.time for point in self.points]

    def tail(self, count: int) -> "Series":
        """Return a new Series holding at most the last `count` points."""
        if count < 0:
            raise BadParameter(f"tail count must be non-negative, got {count}")
        if count == 0:
            return Series()
        return Series(self.points[-count:])


@dataclass(slots=True, frozen=True)
class Snapshot:
    """
    Results of one poll tick.

    Optional fields are None when the backend does not support the
    metric, which is not the same thing as a zero reading.
    """

    total_cpu: int
    total_memory_bytes: int | None
    current_cpu_percent: int
    max_cpu_percent: int | None
    cpu_rate: Series
    current_memory_percent: int
    max_memory_percent: int | None
    memory_rate: Series
    observed_at: datetime
