"""Pydantic models for events, breaks and derived analytics."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Any

from pydantic import AwareDatetime, BaseModel, Field, field_validator, model_validator


def format_timestamp(dt: datetime) -> str:
    """Format an aware datetime as a fixed-width UTC string.

    Always YYYY-MM-DDTHH:MM:SS.ffffffZ with a four-digit year. Fixed width
    keeps lexical order equal to chronological order, which the SQL ordering
    and range queries rely on.
    """
    utc = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return utc.isoformat(timespec="microseconds") + "Z"


def parse_timestamp(ts: str) -> datetime:
    """Parse a stored ISO 8601 timestamp to an aware datetime."""
    return datetime.fromisoformat(ts.replace("Z", "+00:00"))


def _check_partition_key(value: str) -> str:
    """Partition keys are compared exactly, so blank or padded keys are rejected."""
    if not value.strip():
        raise ValueError("partition_key must not be empty")
    if value != value.strip():
        raise ValueError("partition_key must not have leading or trailing whitespace")
    return value


class NewEvent(BaseModel):
    """Event submitted by the ingestion collaborator.

    The ID is generated when the caller does not supply one. Appending an
    identical event twice is idempotent; reusing an ID for a different
    event is rejected by the store.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: AwareDatetime
    partition_key: str
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("partition_key")
    @classmethod
    def _partition_key_valid(cls, value: str) -> str:
        return _check_partition_key(value)

    @field_validator("id")
    @classmethod
    def _id_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("id must not be empty")
        return value


class NewBreak(BaseModel):
    """Break interval excluded from working time.

    A break without a partition key applies to every partition.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    start: AwareDatetime
    end: AwareDatetime
    partition_key: str | None = None
    operator: str | None = None
    break_type: str | None = None

    @field_validator("partition_key")
    @classmethod
    def _partition_key_valid(cls, value: str | None) -> str | None:
        if value is None:
            return value
        return _check_partition_key(value)

    @model_validator(mode="after")
    def _end_after_start(self) -> NewBreak:
        if self.end <= self.start:
            raise ValueError("break end must be after break start")
        return self


class DeltaResult(BaseModel):
    """Output of the delta calculation for one event."""

    predecessor_id: str | None = None
    gross_delta_seconds: int | None = None
    break_overlap_seconds: int = 0
    net_delta_seconds: int | None = None


class DerivedRecord(BaseModel):
    """Analytics row derived from exactly one event."""

    event_id: str
    occurred_at: datetime
    partition_key: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    predecessor_id: str | None = None
    gross_delta_seconds: int | None = None
    break_overlap_seconds: int = 0
    net_delta_seconds: int | None = None
    is_anomaly: bool = False

    def comparable(self) -> tuple:
        """Return the fields that must agree between incremental and batch output."""
        return (
            self.event_id,
            self.occurred_at,
            self.partition_key,
            self.predecessor_id,
            self.gross_delta_seconds,
            self.break_overlap_seconds,
            self.net_delta_seconds,
        )


class DailySummary(BaseModel):
    """Per-day, per-partition rollup of net deltas."""

    summary_date: date
    partition_key: str
    event_count: int
    avg_net_delta_seconds: float | None
    min_net_delta_seconds: int | None
    max_net_delta_seconds: int | None
    anomaly_count: int


class PartitionSummary(BaseModel):
    """Ad-hoc summary of one partition over an optional time window."""

    partition_key: str
    event_count: int
    avg_net_delta_seconds: float | None
    min_net_delta_seconds: int | None
    max_net_delta_seconds: int | None
    anomaly_count: int


class BreakImpactRow(BaseModel):
    """How much of one gap was spent on breaks."""

    event_id: str
    occurred_at: datetime
    partition_key: str
    operator: str | None
    gross_delta_seconds: int
    break_overlap_seconds: int
    net_delta_seconds: int
    gross_delta_minutes: float
    break_overlap_minutes: float
    net_delta_minutes: float
    break_percentage: float


class RecomputeResult(BaseModel):
    records_written: int
    partitions_processed: int
    duration_ms: int


class FlagResult(BaseModel):
    updated_count: int


class AggregateResult(BaseModel):
    partitions_processed: int
    duration_ms: int
