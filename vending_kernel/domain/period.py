"""
Period -- Half-open UTC time windows.

Responsibility:
    Represents reporting periods and effective-date windows with a single,
    uniformly applied convention: ``[start, end)``, ``end = None`` meaning
    open-ended. Provides segmentation of a period at arbitrary boundaries,
    which is how versioned policies are applied across a period.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    - All timestamps are timezone-aware and normalized to UTC.
    - A Period is never empty: ``start < end`` (InvalidPeriodError otherwise).
    - Segments produced by ``split_at`` tile the period exactly: contiguous,
      non-overlapping, and their durations sum to the period duration.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta

from vending_kernel.domain.money import SECONDS_PER_DAY
from vending_kernel.exceptions import InvalidPeriodError


def to_utc(value: datetime | date | str, label: str = "timestamp") -> datetime:
    """
    Normalize a datetime, date or ISO-8601 string to an aware UTC datetime.

    Dates map to midnight UTC. A trailing ``Z`` is accepted. Naive datetimes
    are rejected, since silently assuming a zone would move sales across
    period boundaries.
    """
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                parsed = datetime.combine(date.fromisoformat(text), time.min, tzinfo=UTC)
            except ValueError as exc:
                raise ValueError(f"{label}: cannot parse {value!r} as ISO-8601") from exc
        if len(text) == 10:
            parsed = parsed.replace(tzinfo=UTC)
        value = parsed
    if isinstance(value, datetime):
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError(f"{label}: naive datetime {value.isoformat()} (UTC offset required)")
        return value.astimezone(UTC)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=UTC)
    raise TypeError(f"{label}: expected datetime, date or str, got {type(value).__name__}")


def is_active(start: datetime, end: datetime | None, at: datetime) -> bool:
    """True when ``at`` lies in the half-open window ``[start, end)``."""
    return start <= at and (end is None or at < end)


@dataclass(frozen=True, slots=True)
class Period:
    """
    Half-open reporting window ``[start, end)`` in UTC.

    Contract:
        Construct with aware datetimes (or use ``Period.of`` for dates and
        ISO strings). Construction fails with InvalidPeriodError when the
        window is empty or inverted.
    Guarantees:
        - Immutable and hashable.
        - ``duration_seconds > 0``.
    """

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        try:
            start = to_utc(self.start, "period start")
            end = to_utc(self.end, "period end")
        except (TypeError, ValueError) as exc:
            raise InvalidPeriodError(str(self.start), str(self.end), str(exc)) from exc
        if start >= end:
            raise InvalidPeriodError(start.isoformat(), end.isoformat())
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def of(cls, start: datetime | date | str, end: datetime | date | str) -> Period:
        """Build a period from datetimes, dates (midnight UTC) or ISO-8601 strings."""
        return cls(start=start, end=end)

    @classmethod
    def of_days(cls, start: datetime | date | str, days: int) -> Period:
        """A period of ``days`` whole days beginning at ``start``."""
        begin = to_utc(start, "period start")
        return cls(start=begin, end=begin + timedelta(days=days))

    @property
    def duration_seconds(self) -> int:
        delta = self.end - self.start
        return delta.days * SECONDS_PER_DAY + delta.seconds

    @property
    def period_days(self) -> float:
        """Duration in days, for display. Arithmetic uses ``duration_seconds``."""
        return self.duration_seconds / SECONDS_PER_DAY

    def contains(self, at: datetime) -> bool:
        return self.start <= at < self.end

    def overlaps(self, start: datetime, end: datetime | None) -> bool:
        """True when the half-open window ``[start, end)`` shares time with this period."""
        return start < self.end and (end is None or end > self.start)

    def overlaps_dates(self, first_day: date, last_day: date) -> bool:
        """True when the inclusive day range ``[first_day, last_day]`` touches this period."""
        lo = datetime.combine(first_day, time.min, tzinfo=UTC)
        hi = datetime.combine(last_day, time.min, tzinfo=UTC) + timedelta(days=1)
        return self.overlaps(lo, hi)

    def intersect(self, start: datetime, end: datetime | None) -> Period | None:
        """The part of this period inside ``[start, end)``, or None if disjoint."""
        lo = max(self.start, start)
        hi = self.end if end is None else min(self.end, end)
        if lo >= hi:
            return None
        return Period(start=lo, end=hi)

    def split_at(self, boundaries: Iterable[datetime | None]) -> tuple[Period, ...]:
        """
        Split the period at every boundary strictly inside it.

        Postconditions:
            - Returned segments are ordered, contiguous and tile the period.
            - Boundaries outside ``(start, end)`` and ``None`` are ignored.
        """
        cuts = sorted({b for b in boundaries if b is not None and self.start < b < self.end})
        edges = [self.start, *cuts, self.end]
        return tuple(Period(start=lo, end=hi) for lo, hi in zip(edges, edges[1:]))

    def to_dict(self) -> dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    def __str__(self) -> str:
        return f"[{self.start.isoformat()}, {self.end.isoformat()})"
