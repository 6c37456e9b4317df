"""Pure delta and break-overlap calculations.

Nothing here touches the database. The store feeds these functions with rows
it has read under the partition lock, and the batch path feeds them with a
whole partition at once, so both paths share one implementation.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta
from typing import NamedTuple

from pallet_delta.models import DeltaResult


class Span(NamedTuple):
    start: datetime
    end: datetime


class EventPoint(NamedTuple):
    """The parts of an event that ordering and deltas depend on."""

    id: str
    occurred_at: datetime
    seq: int


def order_key(point: EventPoint) -> tuple[datetime, int]:
    """Total order within a partition: timestamp, then insertion sequence."""
    return (point.occurred_at, point.seq)


def merge_spans(spans: Iterable[Span]) -> list[Span]:
    """Union overlapping or touching spans into disjoint, sorted spans."""
    merged: list[Span] = []
    for span in sorted(spans):
        if merged and span.start <= merged[-1].end:
            last = merged[-1]
            if span.end > last.end:
                merged[-1] = Span(last.start, span.end)
        else:
            merged.append(span)
    return merged


def _seconds(delta: timedelta) -> int:
    return round(delta.total_seconds())


def break_overlap_seconds(
    spans: Iterable[Span],
    start: datetime,
    end: datetime,
    *,
    policy: str = "merge",
) -> int:
    """Total seconds of break time inside [start, end].

    Args:
        spans: Break intervals; any that miss the range are ignored.
        start: Range start.
        end: Range end. An empty range (end <= start) has no overlap.
        policy: "merge" counts each instant at most once, "sum" adds
            every break's intersection independently.

    Returns:
        Overlap in whole seconds, rounded once from the exact total.
    """
    if end <= start:
        return 0
    candidates = [s for s in spans if s.start < end and s.end > start]
    if policy == "merge":
        candidates = merge_spans(candidates)
    elif policy != "sum":
        raise ValueError(f"Unknown overlap policy: {policy}")

    total = timedelta()
    for span in candidates:
        total += min(span.end, end) - max(span.start, start)
    return _seconds(total)


def compute_delta(
    current: EventPoint,
    predecessor: EventPoint | None,
    spans: Iterable[Span],
    *,
    policy: str = "merge",
) -> DeltaResult:
    """Gross, break and net delta between an event and its predecessor.

    Net is not clamped: a negative value means the break data double counts
    and is reported by the consistency check.
    """
    if predecessor is None:
        return DeltaResult()

    gross = _seconds(current.occurred_at - predecessor.occurred_at)
    overlap = break_overlap_seconds(
        spans, predecessor.occurred_at, current.occurred_at, policy=policy
    )
    return DeltaResult(
        predecessor_id=predecessor.id,
        gross_delta_seconds=gross,
        break_overlap_seconds=overlap,
        net_delta_seconds=gross - overlap,
    )


def compute_partition(
    points: Sequence[EventPoint],
    spans: Sequence[Span],
    *,
    policy: str = "merge",
) -> list[tuple[EventPoint, DeltaResult]]:
    """Derive every event of one partition in a single ordered pass."""
    ordered = sorted(points, key=order_key)
    results: list[tuple[EventPoint, DeltaResult]] = []
    previous: EventPoint | None = None
    for point in ordered:
        results.append((point, compute_delta(point, previous, spans, policy=policy)))
        previous = point
    return results
