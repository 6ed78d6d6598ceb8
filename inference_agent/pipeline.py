"""Task orchestration pipeline.

A task moves through ``received -> compute_submitted -> compute_completed ->
stored -> minted -> audited -> reported``. Each checkpoint emits an audit
event through :class:`~inference_agent.audit_trail.AuditTrail`. The first
stage error ends the run: remaining stages are skipped and a single failure
result is reported. Stages are never retried here; retries belong to the
service clients.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Dict, Optional, Protocol, TypeVar

from . import metrics
from .audit_trail import AuditTrail
from .clients.base import AuditClient, ComputeClient, MintClient, StorageClient
from .errors import OperationTimeout, Rejected, StageError
from .messages import ResultStatus, TaskAssignment, TaskResult
from .models import (
    AuditEvent,
    AuditEventType,
    JobRequest,
    JobResult,
    JobStatus,
    MintRequest,
    PipelineRun,
    Stage,
    StorageMetadata,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUDIT_FLUSH_TIMEOUT = 5.0


class ResultReporter(Protocol):
    async def publish_result(self, result: TaskResult) -> None: ...


def digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class TaskPipeline:
    """Drive one task at a time through the compute, storage, mint and audit services."""

    agent_id: str
    compute: ComputeClient
    storage: StorageClient
    minter: MintClient
    reporter: ResultReporter
    audit: Optional[AuditClient] = None
    completed_tasks: int = field(default=0, init=False)
    failed_tasks: int = field(default=0, init=False)
    _active: Dict[str, PipelineRun] = field(default_factory=dict, init=False, repr=False)
    trail: AuditTrail = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.trail = AuditTrail(self.audit)

    @property
    def active_task_id(self) -> Optional[str]:
        return next(iter(self._active), None)

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    async def process(self, task: TaskAssignment) -> PipelineRun:
        """Run ``task`` to completion or failure and return its final state.

        Cancellation is re-raised after the run is marked failed; no result
        is reported for a cancelled task.
        """
        if task.task_id in self._active:
            raise RuntimeError(f"task {task.task_id} is already running")
        run = PipelineRun(task_id=task.task_id)
        self._active[task.task_id] = run
        try:
            await self._drive(run, task)
        except asyncio.CancelledError:
            stage = run.next_stage() or run.stage
            run.fail(StageError.cancelled(stage.value, task.task_id))
            logger.info("task %s cancelled during %s", task.task_id, stage.value)
            raise
        except StageError as exc:
            run.fail(exc)
            await self._handle_failure(run, task, exc)
        else:
            self.completed_tasks += 1
            metrics.TASKS_COMPLETED.inc()
            logger.info("task %s completed in %dms", task.task_id, run.elapsed_ms)
        finally:
            del self._active[task.task_id]
        return run

    async def _stage(self, run: PipelineRun, stage: Stage, call: Awaitable[T]) -> T:
        with metrics.track_stage(stage.value):
            try:
                return await call
            except Exception as exc:
                raise StageError(stage.value, run.task_id, exc) from exc

    def _checkpoint(
        self, run: PipelineRun, kind: AuditEventType, **attrs: Any
    ) -> "asyncio.Future[Optional[str]]":
        event = AuditEvent(
            type=kind,
            agent_id=self.agent_id,
            task_id=run.task_id,
            job_id=run.job_id,
            storage_ref=run.content_id,
            token_ref=run.token_id,
            **attrs,
        )
        return self.trail.emit(event)

    async def _drive(self, run: PipelineRun, task: TaskAssignment) -> None:
        self._checkpoint(
            run,
            AuditEventType.TASK_RECEIVED,
            input_hash=digest(task.input),
            details={"model_id": task.model_id, "priority": task.priority},
        )

        job_id = await self._stage(
            run,
            Stage.COMPUTE_SUBMITTED,
            self.compute.submit_job(
                JobRequest(model_id=task.model_id, input=task.input, max_tokens=task.max_tokens)
            ),
        )
        run.set_reference("job_id", job_id)
        run.advance(Stage.COMPUTE_SUBMITTED)
        self._checkpoint(run, AuditEventType.JOB_SUBMITTED)

        result = await self._stage(run, Stage.COMPUTE_COMPLETED, self._await_result(task, job_id))
        output_hash = digest(result.output)
        run.advance(Stage.COMPUTE_COMPLETED)
        self._checkpoint(
            run,
            AuditEventType.JOB_COMPLETED,
            output_hash=output_hash,
            details={"tokens_used": result.tokens_used},
        )

        content_id = await self._stage(
            run,
            Stage.STORED,
            self.storage.upload(
                result.output.encode("utf-8"),
                StorageMetadata(
                    name=f"inference-{task.task_id}",
                    content_type="text/plain; charset=utf-8",
                    tags={"task_id": task.task_id, "model_id": task.model_id, "job_id": job_id},
                ),
            ),
        )
        run.set_reference("content_id", content_id)
        run.advance(Stage.STORED)
        self._checkpoint(run, AuditEventType.RESULT_STORED)

        token_id = await self._stage(
            run,
            Stage.MINTED,
            self.minter.mint(
                MintRequest(
                    name=f"Inference Result: {task.task_id}",
                    description=f"Output of model {task.model_id} for task {task.task_id}",
                    inference_job_id=job_id,
                    result_hash=output_hash,
                    storage_content_id=content_id,
                    plaintext_meta={
                        "task_id": task.task_id,
                        "model_id": task.model_id,
                        "agent_id": self.agent_id,
                        "input_hash": digest(task.input),
                    },
                )
            ),
        )
        run.set_reference("token_id", token_id)
        run.advance(Stage.MINTED)

        # the token_minted event carries every reference, its id is the run's audit record
        with metrics.track_stage(Stage.AUDITED.value):
            submission_id = await self._checkpoint(
                run, AuditEventType.TOKEN_MINTED, output_hash=output_hash
            )
        if submission_id:
            run.set_reference("audit_submission_id", submission_id)
        else:
            logger.warning("task %s has no audit submission id", task.task_id)
        run.advance(Stage.AUDITED)

        report = TaskResult(
            task_id=task.task_id,
            status=ResultStatus.COMPLETED,
            output=result.output,
            duration_ms=run.elapsed_ms,
            tokens_used=result.tokens_used,
            storage_content_id=content_id,
            mint_token_id=token_id,
            audit_submission_id=run.audit_submission_id,
        )
        await self._stage(run, Stage.REPORTED, self.reporter.publish_result(report))
        run.advance(Stage.REPORTED)
        self._checkpoint(run, AuditEventType.RESULT_REPORTED)

    async def _await_result(self, task: TaskAssignment, job_id: str) -> JobResult:
        timeout = None
        if task.deadline is not None:
            deadline = task.deadline
            if deadline.tzinfo is None:
                deadline = deadline.replace(tzinfo=timezone.utc)
            timeout = (deadline - datetime.now(timezone.utc)).total_seconds()
            if timeout <= 0:
                raise OperationTimeout(f"deadline {task.deadline.isoformat()} already passed")
        result = await self.compute.get_result(job_id, timeout=timeout)
        if result.status is not JobStatus.COMPLETED:
            raise Rejected(f"job {job_id} ended {result.status.value}: {result.error or ''}")
        return result

    async def _handle_failure(
        self, run: PipelineRun, task: TaskAssignment, exc: StageError
    ) -> None:
        self.failed_tasks += 1
        metrics.TASKS_FAILED.inc()
        logger.error("task %s failed at %s: %s", task.task_id, exc.stage, exc.cause)
        self._checkpoint(
            run,
            AuditEventType.JOB_FAILED,
            details={"stage": exc.stage, "kind": exc.kind, "error": str(exc)},
        )
        report = TaskResult(
            task_id=task.task_id,
            status=ResultStatus.FAILED,
            duration_ms=run.elapsed_ms,
            storage_content_id=run.content_id,
            mint_token_id=run.token_id,
            error=str(exc),
        )
        try:
            await self.reporter.publish_result(report)
        except Exception as report_exc:
            logger.warning("failure report for task %s not sent: %s", task.task_id, report_exc)

    async def close(self, flush_timeout: float = AUDIT_FLUSH_TIMEOUT) -> None:
        """Give queued audit events ``flush_timeout`` seconds, then stop the trail."""
        try:
            await asyncio.wait_for(self.trail.flush(), flush_timeout)
        except asyncio.TimeoutError:
            logger.warning("audit trail not flushed within %.1fs", flush_timeout)
        await self.trail.close()
