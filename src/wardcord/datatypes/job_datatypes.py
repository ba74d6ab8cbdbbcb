"""
Scheduled job records and their typed payloads.

The ``data`` column is parsed once, when a claimed row is turned into a
:class:`ScheduledJob`, into the payload class registered for the job type.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

# Value of ``locked_by`` for jobs that exhausted their attempts
FAILED_MARKER = "failed"

# guild_id used by jobs that are not tied to one guild
SYSTEM_GUILD_ID = "system"


class JobType(Enum):
    """Every job type the worker knows how to run."""

    UNBAN = "unban"
    UNTIMEOUT = "untimeout"
    UNMUTE = "unmute"
    REAPPLY_TIMEOUT = "reapply_timeout"
    SLOWMODE_END = "slowmode_end"
    LOCKDOWN_END = "lockdown_end"
    CLEANUP_EXPIRED = "cleanup_expired"
    CLEANUP_COMPONENTS = "cleanup_components"

    def __str__(self) -> str:
        return self.value


@dataclass(slots=True)
class EmptyPayload:
    pass


@dataclass(slots=True)
class ReversalPayload:
    """Optional audit reason for unban, untimeout, unmute, slowmode and lockdown jobs."""
    reason: Optional[str] = None


@dataclass(slots=True)
class ReapplyTimeoutPayload:
    """Absolute end of the full timeout, unix seconds."""
    ends_at: int


JobPayload = Union[EmptyPayload, ReversalPayload, ReapplyTimeoutPayload]

PAYLOAD_TYPES: Dict[JobType, type] = {
    JobType.UNBAN: ReversalPayload,
    JobType.UNTIMEOUT: ReversalPayload,
    JobType.UNMUTE: ReversalPayload,
    JobType.SLOWMODE_END: ReversalPayload,
    JobType.LOCKDOWN_END: ReversalPayload,
    JobType.REAPPLY_TIMEOUT: ReapplyTimeoutPayload,
    JobType.CLEANUP_EXPIRED: EmptyPayload,
    JobType.CLEANUP_COMPONENTS: EmptyPayload,
}


def parse_payload(job_type: JobType, raw: Any) -> JobPayload:
    """Parse the stored JSON ``data`` column for ``job_type``.

    Raises:
        ValueError: If the payload is not valid JSON or misses required fields.
    """
    if isinstance(raw, (str, bytes)):
        data = json.loads(raw) if raw else {}
    else:
        data = dict(raw or {})
    if not isinstance(data, dict):
        raise ValueError(f"payload for {job_type} must be an object")

    payload_cls = PAYLOAD_TYPES[job_type]
    if payload_cls is EmptyPayload:
        return EmptyPayload()
    if payload_cls is ReapplyTimeoutPayload:
        if "ends_at" not in data:
            raise ValueError("reapply_timeout payload requires ends_at")
        return ReapplyTimeoutPayload(ends_at=int(data["ends_at"]))
    return ReversalPayload(reason=data.get("reason"))


def dump_payload(payload: JobPayload | Dict[str, Any] | None) -> str:
    if payload is None:
        return "{}"
    if isinstance(payload, dict):
        return json.dumps(payload)
    return json.dumps(asdict(payload))


@dataclass(slots=True)
class ScheduledJob:
    """A single row from the ``scheduled_jobs`` table."""
    id: int
    type: JobType
    guild_id: str
    user_id: Optional[str]
    channel_id: Optional[str]
    infraction_id: Optional[int]
    run_at: int                 # unix seconds (UTC)
    priority: int
    attempts: int
    last_error: Optional[str]
    locked_at: Optional[int]
    locked_by: Optional[str]
    payload: JobPayload

    @property
    def failed(self) -> bool:
        return self.locked_by == FAILED_MARKER

    @classmethod
    def from_row(cls, row: Any) -> "ScheduledJob":
        """Build a job from a row; raises ValueError for unknown types or bad payloads."""
        job_type = JobType(row["type"])
        return cls(
            id=int(row["id"]),
            type=job_type,
            guild_id=str(row["guild_id"]),
            user_id=row["user_id"],
            channel_id=row["channel_id"],
            infraction_id=row["infraction_id"],
            run_at=int(row["run_at"]),
            priority=int(row["priority"]),
            attempts=int(row["attempts"]),
            last_error=row["last_error"],
            locked_at=row["locked_at"],
            locked_by=row["locked_by"],
            payload=parse_payload(job_type, row["data"]),
        )
