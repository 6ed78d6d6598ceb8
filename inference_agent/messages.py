"""Message envelopes exchanged over the task and result channels."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field, ValidationError, field_validator


class MessageType(str, Enum):
    TASK_ASSIGNMENT = "task_assignment"
    STATUS_UPDATE = "status_update"
    TASK_RESULT = "task_result"
    HEARTBEAT = "heartbeat"


class Envelope(BaseModel):
    """Wrapper carried by every message on the channels."""

    type: MessageType
    sender: str
    recipient: str | None = None
    task_id: str | None = None
    sequence_num: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] | None = None

    def encode(self) -> bytes:
        return self.model_dump_json(exclude_none=True).encode("utf-8")

    def addressed_to(self, agent_id: str) -> bool:
        """Return ``True`` for broadcast messages or ones sent to ``agent_id``."""
        return not self.recipient or self.recipient == agent_id


class TaskAssignment(BaseModel):
    """Schema for a unit of work sent to the agent."""

    task_id: str = Field(min_length=1)
    model_id: str = Field(min_length=1)
    input: str
    priority: int = 0
    max_tokens: int | None = None
    callback_url: str | None = None
    deadline: datetime | None = None

    @field_validator("deadline")
    @classmethod
    def _zero_deadline_is_unset(cls, value: datetime | None) -> datetime | None:
        if value is not None and value.year <= 1:
            return None
        return value


class ResultStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class TaskResult(BaseModel):
    """Schema for the outcome reported for a task."""

    task_id: str
    status: ResultStatus
    output: str | None = None
    duration_ms: int | None = None
    tokens_used: int | None = None
    storage_content_id: str | None = None
    mint_token_id: str | None = None
    audit_submission_id: str | None = None
    error: str | None = None


class HealthStatus(BaseModel):
    """Schema for the periodic heartbeat."""

    agent_id: str
    status: str
    active_task_id: str | None = None
    uptime_seconds: int
    completed_tasks: int
    failed_tasks: int


def parse_envelope(raw: bytes | str) -> Envelope | None:
    """Return the decoded envelope or ``None`` when ``raw`` is not one."""
    try:
        return Envelope.model_validate_json(raw)
    except ValidationError:
        return None


def parse_assignment(envelope: Envelope) -> TaskAssignment | None:
    if envelope.payload is None:
        return None
    try:
        return TaskAssignment.model_validate(envelope.payload)
    except ValidationError:
        return None


__all__ = [
    "MessageType",
    "Envelope",
    "TaskAssignment",
    "ResultStatus",
    "TaskResult",
    "HealthStatus",
    "parse_envelope",
    "parse_assignment",
]
