"""
Workflow Engine (Saga)

Executes ordered service-call steps with per-step timeout and retry, and
rolls back completed steps with compensating actions, in reverse order,
on the first unrecoverable failure.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from fleetcore import events, metrics
from fleetcore.config import WorkflowSettings, get_workflow_settings
from fleetcore.events import EventBus
from fleetcore.exceptions import (
    CompensationFailure,
    ServiceCallError,
    WorkflowNotFoundError,
    WorkflowStepFailure,
)
from fleetcore.orchestrator import Orchestrator
from fleetcore.workflow.models import (
    CompensationOutcome,
    StepStatus,
    Workflow,
    WorkflowHandle,
    WorkflowStatus,
    WorkflowStatusReport,
    WorkflowStep,
)

logger = structlog.get_logger(__name__)


@dataclass
class _WorkflowRun:
    """Engine-side bookkeeping for one workflow."""

    workflow: Workflow
    task: asyncio.Task[WorkflowStatusReport] | None = None
    step_task: asyncio.Task[Any] | None = None
    cancel_requested: bool = False
    done: asyncio.Event = field(default_factory=asyncio.Event)


class WorkflowEngine:
    """
    Saga workflow engine.

    Guarantees:
    - Steps run strictly in declared order; none starts before its
      predecessor's result is known
    - Only ServiceCallError (including timeouts) is retried, with
      exponential backoff; circuit rejection, no healthy instance and
      unknown service fail the step at once
    - Compensations run in reverse completion order, best-effort; their
      failures are reported on the workflow, never raised
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        settings: WorkflowSettings | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        """
        Initialize workflow engine.

        Args:
            orchestrator: Routes every step and compensation call
            settings: Workflow settings
            event_bus: Bus for progress notifications, defaults to the
                orchestrator's
        """
        self.orchestrator = orchestrator
        self.settings = settings or get_workflow_settings()
        self.event_bus = event_bus or orchestrator.event_bus
        self._runs: dict[str, _WorkflowRun] = {}

    async def submit_workflow(self, workflow: Workflow) -> WorkflowHandle:
        """
        Start a workflow in the background.

        Args:
            workflow: Pending workflow

        Returns:
            Handle for status queries, cancellation and waiting

        Raises:
            ValueError: If the workflow is already tracked or not pending
        """
        run = self._track(workflow)
        run.task = asyncio.create_task(self._run(run))
        logger.info(
            "workflow_submitted",
            workflow_id=workflow.workflow_id,
            workflow_name=workflow.name,
        )
        return WorkflowHandle(workflow_id=workflow.workflow_id)

    async def execute(self, workflow: Workflow) -> WorkflowStatusReport:
        """
        Run a workflow to completion in the calling task.

        Args:
            workflow: Pending workflow

        Returns:
            Final status snapshot

        Raises:
            ValueError: If the workflow is already tracked or not pending
        """
        run = self._track(workflow)
        run.task = asyncio.current_task()  # type: ignore[assignment]
        return await self._run(run)

    def get_workflow_status(self, handle: WorkflowHandle | str) -> WorkflowStatusReport:
        """
        Get a snapshot of a workflow's progress.

        Repeated calls without intervening progress return equal snapshots.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
        """
        return WorkflowStatusReport.from_workflow(self._get_run(handle).workflow)

    async def cancel(self, handle: WorkflowHandle | str) -> bool:
        """
        Request cancellation of a workflow.

        The engine checks for cancellation before starting each step. A step
        already in flight is interrupted and handled like a failure, so
        completed steps are compensated.

        Returns:
            False if the workflow had already finished

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
        """
        return self.request_cancellation(handle)

    def request_cancellation(self, handle: WorkflowHandle | str) -> bool:
        """
        Request cancellation without awaiting, for use from synchronous
        callbacks such as event handlers. Same semantics as ``cancel``.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
        """
        run = self._get_run(handle)
        if run.workflow.is_terminal:
            return False

        run.cancel_requested = True
        if run.step_task is not None and not run.step_task.done():
            run.step_task.cancel()

        logger.info("workflow_cancel_requested", workflow_id=run.workflow.workflow_id)
        return True

    async def wait(
        self, handle: WorkflowHandle | str, timeout: float | None = None
    ) -> WorkflowStatusReport:
        """
        Wait for a workflow to finish.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
            TimeoutError: If it does not finish within ``timeout``
        """
        run = self._get_run(handle)
        await asyncio.wait_for(run.done.wait(), timeout=timeout)
        return WorkflowStatusReport.from_workflow(run.workflow)

    def forget(self, handle: WorkflowHandle | str) -> None:
        """
        Discard a finished workflow.

        Raises:
            WorkflowNotFoundError: If the workflow is not tracked
            ValueError: If the workflow has not finished
        """
        run = self._get_run(handle)
        if not run.workflow.is_terminal:
            raise ValueError(f"Workflow still active: {run.workflow.workflow_id}")
        del self._runs[run.workflow.workflow_id]

    def list_workflows(self) -> list[WorkflowStatusReport]:
        """Snapshots of all tracked workflows."""
        return [WorkflowStatusReport.from_workflow(r.workflow) for r in self._runs.values()]

    def _track(self, workflow: Workflow) -> _WorkflowRun:
        if workflow.workflow_id in self._runs:
            raise ValueError(f"Workflow already submitted: {workflow.workflow_id}")
        if workflow.status != WorkflowStatus.PENDING:
            raise ValueError(
                f"Workflow {workflow.workflow_id} is {workflow.status.value}, expected pending"
            )
        run = _WorkflowRun(workflow=workflow)
        self._runs[workflow.workflow_id] = run
        return run

    def _get_run(self, handle: WorkflowHandle | str) -> _WorkflowRun:
        workflow_id = handle.workflow_id if isinstance(handle, WorkflowHandle) else handle
        run = self._runs.get(workflow_id)
        if run is None:
            raise WorkflowNotFoundError(workflow_id)
        return run

    async def _run(self, run: _WorkflowRun) -> WorkflowStatusReport:
        """Execute steps in order, compensating on failure."""
        workflow = run.workflow
        workflow.status = WorkflowStatus.RUNNING
        workflow.started_at = datetime.now(UTC)
        workflow.current_step_index = 0

        logger.info(
            "workflow_started",
            workflow_id=workflow.workflow_id,
            workflow_name=workflow.name,
            step_count=len(workflow.steps),
        )
        self.event_bus.publish(
            events.WORKFLOW_STARTED,
            workflow_id=workflow.workflow_id,
            workflow_name=workflow.name,
            step_count=len(workflow.steps),
        )

        try:
            failed_index: int | None = None
            for index, step in enumerate(workflow.steps):
                if run.cancel_requested:
                    workflow.cancelled = True
                    workflow.error = f"Cancelled before step '{step.display_name}'"
                    failed_index = index
                    break

                workflow.current_step_index = index
                if not await self._execute_step(run, step):
                    failed_index = index
                    break

            if failed_index is None:
                workflow.current_step_index = len(workflow.steps)
                workflow.status = WorkflowStatus.COMPLETED
            else:
                workflow.status = WorkflowStatus.FAILED
                await self._compensate(workflow, failed_index)
        except asyncio.CancelledError:
            if not workflow.is_terminal:
                # Engine task itself was cancelled mid-step
                workflow.status = WorkflowStatus.FAILED
                workflow.cancelled = True
                workflow.error = workflow.error or "Workflow task cancelled"
                await self._compensate_after_cancel(workflow)
            raise
        finally:
            workflow.ended_at = datetime.now(UTC)
            self._finish(run)

        return WorkflowStatusReport.from_workflow(workflow)

    async def _execute_step(self, run: _WorkflowRun, step: WorkflowStep) -> bool:
        """Run one step to a terminal status. Returns True on success."""
        workflow = run.workflow
        step.status = StepStatus.RUNNING
        step.started_at = datetime.now(UTC)

        run.step_task = asyncio.create_task(self._attempt_with_retries(step))
        try:
            step.result = await run.step_task
        except asyncio.CancelledError:
            step.status = StepStatus.FAILED
            step.error = "cancelled"
            workflow.cancelled = True
            workflow.error = f"Cancelled during step '{step.display_name}'"
            self._step_failed(workflow, step)
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            return False
        except WorkflowStepFailure as e:
            step.status = StepStatus.FAILED
            step.error = e.reason
            workflow.error = e.message
            self._step_failed(workflow, step)
            return False
        finally:
            run.step_task = None

        step.status = StepStatus.COMPLETED
        step.completed_at = datetime.now(UTC)
        logger.info(
            "workflow_step_completed",
            workflow_id=workflow.workflow_id,
            step_name=step.display_name,
            attempts=step.attempts,
        )
        self.event_bus.publish(
            events.WORKFLOW_STEP_COMPLETED,
            workflow_id=workflow.workflow_id,
            step_id=step.step_id,
            step_name=step.display_name,
            step_index=workflow.current_step_index,
        )
        return True

    async def _attempt_with_retries(self, step: WorkflowStep) -> Any:
        """Call the step's service, retrying transient call failures.

        Raises:
            WorkflowStepFailure: Once retries are exhausted or on a
                non-retryable error
        """
        max_retries = (
            step.max_retries
            if step.max_retries is not None
            else self.settings.default_max_retries
        )
        timeout = step.timeout_seconds or self.settings.default_step_timeout_seconds

        last_error: Exception | None = None
        for attempt in range(max_retries + 1):
            step.attempts = attempt + 1
            try:
                return await self.orchestrator.call_service(
                    step.service_id, step.action, step.params, timeout=timeout
                )
            except ServiceCallError as e:
                last_error = e
                logger.warning(
                    "workflow_step_attempt_failed",
                    step_name=step.display_name,
                    service_id=step.service_id,
                    attempt=step.attempts,
                    max_attempts=max_retries + 1,
                    error=str(e),
                )
                if attempt < max_retries:
                    await asyncio.sleep(self._backoff_delay(attempt))
            except Exception as e:
                # Circuit open, no healthy instance, unknown service: not retried
                raise WorkflowStepFailure(step.display_name, step.attempts, str(e)) from e

        assert last_error is not None
        raise WorkflowStepFailure(
            step.display_name, step.attempts, str(last_error)
        ) from last_error

    def _backoff_delay(self, attempt: int) -> float:
        """Delay before retry ``attempt + 1``: base, 2x base, 4x base, ..."""
        delay = self.settings.retry_base_delay_seconds * (2**attempt)
        return min(delay, self.settings.retry_max_delay_seconds)

    async def _compensate(self, workflow: Workflow, failed_index: int) -> None:
        """Compensate completed steps before ``failed_index`` in reverse order."""
        completed = [
            s for s in workflow.steps[:failed_index] if s.status == StepStatus.COMPLETED
        ]
        if not completed:
            return

        logger.info(
            "workflow_compensation_started",
            workflow_id=workflow.workflow_id,
            completed_steps=len(completed),
        )

        for step in reversed(completed):
            if step.compensation is None:
                logger.debug(
                    "workflow_step_has_no_compensation",
                    workflow_id=workflow.workflow_id,
                    step_name=step.display_name,
                )
                continue
            workflow.compensations.append(await self._run_compensation(workflow, step))

        logger.info(
            "workflow_compensation_finished",
            workflow_id=workflow.workflow_id,
            compensated=sum(1 for c in workflow.compensations if c.succeeded),
            failed=len(workflow.compensation_failures),
        )

    async def _compensate_after_cancel(self, workflow: Workflow) -> None:
        """Roll back for a cancelled engine task.

        The rollback runs in its own task so a repeated cancellation cannot
        interrupt it; only the wait for it is abandoned.
        """
        rollback = asyncio.create_task(self._compensate(workflow, len(workflow.steps)))
        try:
            await asyncio.shield(rollback)
        except asyncio.CancelledError:
            logger.warning(
                "workflow_compensation_detached",
                workflow_id=workflow.workflow_id,
            )
            raise

    async def _run_compensation(
        self, workflow: Workflow, step: WorkflowStep
    ) -> CompensationOutcome:
        """Invoke one compensating action; failures are recorded, not raised."""
        compensation = step.compensation
        assert compensation is not None
        outcome = CompensationOutcome(
            step_id=step.step_id,
            step_name=step.display_name,
            service_id=compensation.service_id,
            action=compensation.action,
            succeeded=True,
        )

        try:
            await self.orchestrator.call_service(
                compensation.service_id,
                compensation.action,
                compensation.params,
                timeout=(
                    compensation.timeout_seconds
                    or self.settings.compensation_timeout_seconds
                ),
                bypass_circuit_breaker=self.settings.compensation_bypass_circuit_breaker,
            )
        except Exception as e:
            failure = CompensationFailure(step.display_name, str(e))
            outcome = outcome.model_copy(update={"succeeded": False, "error": failure.reason})
            logger.error(
                "workflow_compensation_failed",
                workflow_id=workflow.workflow_id,
                step_name=step.display_name,
                service_id=compensation.service_id,
                action=compensation.action,
                error=failure.message,
            )

        if self.orchestrator.settings.enable_metrics:
            metrics.record_compensation("success" if outcome.succeeded else "failure")
        return outcome

    def _step_failed(self, workflow: Workflow, step: WorkflowStep) -> None:
        logger.warning(
            "workflow_step_failed",
            workflow_id=workflow.workflow_id,
            step_name=step.display_name,
            attempts=step.attempts,
            error=step.error,
        )
        self.event_bus.publish(
            events.WORKFLOW_STEP_FAILED,
            workflow_id=workflow.workflow_id,
            step_id=step.step_id,
            step_name=step.display_name,
            error=step.error,
        )

    def _finish(self, run: _WorkflowRun) -> None:
        workflow = run.workflow
        duration_ms = (
            int((workflow.ended_at - workflow.started_at).total_seconds() * 1000)
            if workflow.ended_at and workflow.started_at
            else 0
        )
        logger.info(
            "workflow_finished",
            workflow_id=workflow.workflow_id,
            workflow_name=workflow.name,
            status=workflow.status.value,
            cancelled=workflow.cancelled,
            compensation_failures=len(workflow.compensation_failures),
            duration_ms=duration_ms,
        )
        if self.orchestrator.settings.enable_metrics:
            metrics.record_workflow(workflow.status.value)
        self.event_bus.publish(
            events.WORKFLOW_FINISHED,
            workflow_id=workflow.workflow_id,
            status=workflow.status.value,
            cancelled=workflow.cancelled,
        )
        run.done.set()
