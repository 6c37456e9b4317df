"""Engine settings."""

from __future__ import annotations

import os
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field, field_validator

DEFAULT_DB_PATH = Path.home() / ".local" / "share" / "pallet-delta" / "pallets.db"

ENV_PREFIX = "PALLET_DELTA_"


class EngineSettings(BaseModel):
    """Tunables for delta computation, anomaly flagging and locking.

    Attributes:
        anomaly_threshold_seconds: Net delta above which a record is an anomaly.
        overlap_policy: "merge" unions overlapping breaks before summing,
            "sum" adds each break's overlap independently.
        summary_timezone: IANA zone that defines calendar days for rollups.
        max_retries: Attempts for an append before reporting a transient failure.
        lock_timeout_seconds: How long to wait for a partition lock.
        busy_timeout_seconds: SQLite busy handler timeout.
        retry_backoff_seconds: Base delay between retries (multiplied by attempt).
    """

    anomaly_threshold_seconds: int = Field(default=300, ge=0)
    overlap_policy: Literal["merge", "sum"] = "merge"
    summary_timezone: str = "UTC"
    max_retries: int = Field(default=3, ge=1)
    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    busy_timeout_seconds: float = Field(default=5.0, gt=0)
    retry_backoff_seconds: float = Field(default=0.05, ge=0)

    @field_validator("summary_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        if value != "UTC":
            try:
                ZoneInfo(value)
            except (ZoneInfoNotFoundError, ValueError) as e:
                raise ValueError(f"unknown timezone: {value}") from e
        return value

    @property
    def tz(self) -> tzinfo:
        if self.summary_timezone == "UTC":
            return timezone.utc
        return ZoneInfo(self.summary_timezone)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> EngineSettings:
        """Build settings from PALLET_DELTA_* environment variables.

        Unset variables keep their defaults. Values are validated by pydantic.
        """
        if environ is None:
            environ = dict(os.environ)
        values = {}
        for name in cls.model_fields:
            raw = environ.get(ENV_PREFIX + name.upper())
            if raw is not None:
                values[name] = raw
        return cls.model_validate(values)
