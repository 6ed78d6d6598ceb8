"""Error taxonomy shared by the agent, its clients and the pipeline."""

from __future__ import annotations


class AgentError(RuntimeError):
    """Base class for errors surfaced by the inference agent."""

    kind = "internal"


class TransportError(AgentError):
    """Subscription or publish failure on the messaging transport."""

    kind = "transport"


class SubscriptionExhausted(TransportError):
    """Raised when the inbound subscription gave up reconnecting."""


class ServiceUnreachable(AgentError):
    """An external service could not be reached."""

    kind = "service-unreachable"


class Rejected(AgentError):
    """An external service explicitly refused the operation."""

    kind = "rejected"


class IntegrityError(Rejected):
    """Downloaded content does not match its content address."""


class EncryptionError(Rejected):
    """Metadata could not be encrypted or decrypted."""


class NotFound(AgentError):
    kind = "not-found"


class OperationTimeout(AgentError):
    """A poll or confirmation budget ran out."""

    kind = "timeout"


class AuthenticationError(AgentError):
    kind = "authentication"


class ConfigError(AgentError):
    """Invalid or missing configuration."""

    kind = "config"


class RetryExhausted(AgentError):
    """All attempts of a :class:`~inference_agent.retry.RetryPolicy` failed."""

    def __init__(self, description: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{description}: all {attempts} attempts failed: {last_error}")
        self.description = description
        self.attempts = attempts
        self.last_error = last_error

    @property
    def kind(self) -> str:  # type: ignore[override]
        return getattr(self.last_error, "kind", AgentError.kind)


class StageError(AgentError):
    """A pipeline stage failed for one task.

    Carries the stage name, the task id and the underlying cause so the
    failure can be reconstructed even if the audit publish was lost.
    """

    def __init__(self, stage: str, task_id: str, cause: BaseException | None) -> None:
        detail = str(cause) if cause is not None else "cancelled"
        super().__init__(f"{stage}: task {task_id}: {detail}")
        self.stage = stage
        self.task_id = task_id
        self.cause = cause

    @classmethod
    def cancelled(cls, stage: str, task_id: str) -> "StageError":
        return cls(stage, task_id, None)

    @property
    def kind(self) -> str:  # type: ignore[override]
        if self.cause is None:
            return "cancellation"
        return getattr(self.cause, "kind", AgentError.kind)


__all__ = [
    "AgentError",
    "TransportError",
    "SubscriptionExhausted",
    "ServiceUnreachable",
    "Rejected",
    "IntegrityError",
    "EncryptionError",
    "NotFound",
    "OperationTimeout",
    "AuthenticationError",
    "ConfigError",
    "RetryExhausted",
    "StageError",
]
