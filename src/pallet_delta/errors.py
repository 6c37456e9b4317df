"""Exceptions raised by the delta engine."""

from __future__ import annotations

from dataclasses import dataclass


class EngineError(Exception):
    """Base exception for delta engine errors."""

    pass


class ConcurrencyConflict(EngineError):
    """Raised when a unit of work could not get exclusive access to its scope.

    The scope is a partition key for appends and recomputes, or a job name
    for store-wide batch operations.
    """

    def __init__(self, scope: str, reason: str) -> None:
        self.scope = scope
        self.reason = reason
        super().__init__(f"Concurrency conflict on '{scope}': {reason}")


class TransientFailure(EngineError):
    """Raised when an append keeps conflicting after all retries."""

    def __init__(self, partition_key: str, attempts: int) -> None:
        self.partition_key = partition_key
        self.attempts = attempts
        super().__init__(
            f"Append to partition '{partition_key}' failed after {attempts} attempts; retry later"
        )


@dataclass(frozen=True)
class Finding:
    """A single consistency problem found in stored state."""

    kind: str
    event_id: str
    partition_key: str
    detail: str


class ConsistencyViolation(EngineError):
    """Raised when stored derived records break an engine invariant."""

    def __init__(self, findings: list[Finding]) -> None:
        self.findings = findings
        kinds = sorted({f.kind for f in findings})
        super().__init__(f"{len(findings)} consistency finding(s): {', '.join(kinds)}")


class DuplicateEventConflict(EngineError):
    """Raised when an event ID is reused for a different event.

    Re-appending an identical event is a no-op; this covers IDs whose stored
    timestamp, partition or attributes differ from the incoming event.
    """

    def __init__(self, event_id: str, fields: list[str]) -> None:
        self.event_id = event_id
        self.fields = fields
        super().__init__(
            f"Event '{event_id}' already stored with a different {', '.join(fields)}"
        )
