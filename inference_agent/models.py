"""Data model shared by the pipeline and the service clients."""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import StageError


@dataclass(frozen=True)
class ProviderRecord:
    """A compute provider able to serve ``model``."""

    model: str
    url: str
    provider: str = ""
    name: str = ""
    service_type: str = "chatbot"


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class JobRequest:
    model_id: str
    input: str
    max_tokens: Optional[int] = None
    temperature: float = 0.7


@dataclass
class JobResult:
    job_id: str
    status: JobStatus
    output: str = ""
    tokens_used: int = 0
    error: Optional[str] = None


@dataclass
class StorageMetadata:
    content_id: str = ""
    name: str = ""
    size: int = 0
    content_type: str = "application/octet-stream"
    created_at: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class EncryptedMetadata:
    ciphertext: bytes
    nonce: bytes
    key_id: str
    algorithm: str = "AES-256-GCM"

    def to_dict(self) -> Dict[str, str]:
        return {
            "ciphertext": self.ciphertext.hex(),
            "nonce": self.nonce.hex(),
            "key_id": self.key_id,
            "algorithm": self.algorithm,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "EncryptedMetadata":
        return cls(
            ciphertext=bytes.fromhex(data["ciphertext"]),
            nonce=bytes.fromhex(data["nonce"]),
            key_id=data["key_id"],
            algorithm=data.get("algorithm", "AES-256-GCM"),
        )


@dataclass
class MintRequest:
    name: str
    description: str
    inference_job_id: str
    result_hash: str
    storage_content_id: str
    plaintext_meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TokenStatus:
    token_id: str
    owner: str
    exists: bool = True


class AuditEventType(str, Enum):
    TASK_RECEIVED = "task_received"
    JOB_SUBMITTED = "job_submitted"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    RESULT_STORED = "result_stored"
    TOKEN_MINTED = "token_minted"
    RESULT_REPORTED = "result_reported"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AuditEvent:
    """One append-only checkpoint record of a task's pipeline."""

    type: AuditEventType
    agent_id: str
    task_id: str
    job_id: Optional[str] = None
    storage_ref: Optional[str] = None
    token_ref: Optional[str] = None
    input_hash: Optional[str] = None
    output_hash: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["timestamp"] = self.timestamp.isoformat()
        return {k: v for k, v in data.items() if v is not None}


class Stage(str, Enum):
    RECEIVED = "received"
    COMPUTE_SUBMITTED = "compute_submitted"
    COMPUTE_COMPLETED = "compute_completed"
    STORED = "stored"
    MINTED = "minted"
    AUDITED = "audited"
    REPORTED = "reported"


STAGE_ORDER: List[Stage] = list(Stage)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_REFERENCES = ("job_id", "content_id", "token_id", "audit_submission_id")


@dataclass
class PipelineRun:
    """State of one task moving through the pipeline.

    Stages only move forward one step at a time and each stage reference is
    written at most once.
    """

    task_id: str
    stage: Stage = Stage.RECEIVED
    started_at: float = field(default_factory=time.monotonic)
    job_id: Optional[str] = None
    content_id: Optional[str] = None
    token_id: Optional[str] = None
    audit_submission_id: Optional[str] = None
    status: RunStatus = RunStatus.RUNNING
    error: Optional[StageError] = None
    history: List[Stage] = field(default_factory=lambda: [Stage.RECEIVED])

    def next_stage(self) -> Optional[Stage]:
        index = STAGE_ORDER.index(self.stage)
        if index + 1 < len(STAGE_ORDER):
            return STAGE_ORDER[index + 1]
        return None

    def advance(self, stage: Stage) -> None:
        if self.status is not RunStatus.RUNNING:
            raise RuntimeError(f"run for {self.task_id} already {self.status.value}")
        if stage is not self.next_stage():
            raise RuntimeError(
                f"cannot move task {self.task_id} from {self.stage.value} to {stage.value}"
            )
        self.stage = stage
        self.history.append(stage)
        if stage is Stage.REPORTED:
            self.status = RunStatus.COMPLETED

    def set_reference(self, name: str, value: str) -> None:
        if name not in _REFERENCES:
            raise KeyError(name)
        if getattr(self, name) is not None:
            raise RuntimeError(f"{name} already set for task {self.task_id}")
        setattr(self, name, value)

    def fail(self, error: StageError) -> None:
        self.status = RunStatus.FAILED
        self.error = error

    @property
    def failure_reason(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)
