"""
Workflow Models

Ordered multi-step workflows whose steps are service calls, each with an
optional compensating action.
"""

from __future__ import annotations

import copy
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator

from fleetcore.models import ActionParams, coerce_params


class WorkflowStatus(str, Enum):
    """Status of a workflow."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a workflow step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})


class CompensatingAction(BaseModel):
    """Inverse call that undoes a completed step."""

    model_config = ConfigDict(frozen=True)

    service_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    params: SerializeAsAny[ActionParams] = Field(default_factory=ActionParams)
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Overrides the engine default"
    )

    @field_validator("params", mode="before")
    @classmethod
    def _coerce_params(cls, v: Any) -> ActionParams:
        return coerce_params(v)


class WorkflowStep(BaseModel):
    """
    Individual step in a workflow.

    Each step is a call to ``service_id.action`` with an optional
    compensating action used only if the workflow rolls back.
    """

    step_id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = Field(default="", description="Defaults to the action name")
    service_id: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    params: SerializeAsAny[ActionParams] = Field(default_factory=ActionParams)
    timeout_seconds: float | None = Field(
        default=None, gt=0, description="Per-attempt deadline; engine default if unset"
    )
    max_retries: int | None = Field(
        default=None, ge=0, description="Retries after the first attempt; engine default if unset"
    )
    compensation: CompensatingAction | None = None

    # Status tracking
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"frozen": False}

    @field_validator("params", mode="before")
    @classmethod
    def _coerce_params(cls, v: Any) -> ActionParams:
        return coerce_params(v)

    @property
    def display_name(self) -> str:
        """Step name, falling back to the action."""
        return self.name or self.action


class CompensationOutcome(BaseModel):
    """Result of one compensating action during rollback."""

    step_id: str
    step_name: str
    service_id: str
    action: str
    succeeded: bool
    error: str | None = None


class Workflow(BaseModel):
    """Runtime state of a workflow. Owns its steps exclusively."""

    workflow_id: str = Field(default_factory=lambda: uuid4().hex)
    name: str
    steps: list[WorkflowStep] = Field(default_factory=list)

    current_step_index: int = 0
    status: WorkflowStatus = WorkflowStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None

    error: str | None = None
    cancelled: bool = False
    compensations: list[CompensationOutcome] = Field(default_factory=list)

    model_config = {"frozen": False}

    @property
    def is_terminal(self) -> bool:
        """Check if the workflow has finished."""
        return self.status in TERMINAL_STATUSES

    @property
    def compensation_failures(self) -> list[CompensationOutcome]:
        """Compensations that did not succeed."""
        return [c for c in self.compensations if not c.succeeded]


class WorkflowHandle(BaseModel):
    """Opaque reference to a submitted workflow."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str


class StepReport(BaseModel):
    """Snapshot of one step for status queries."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    name: str
    service_id: str
    action: str
    status: StepStatus
    attempts: int
    result: Any = None
    error: str | None = None


class WorkflowStatusReport(BaseModel):
    """Immutable snapshot of a workflow's progress."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    name: str
    status: WorkflowStatus
    current_step_index: int
    total_steps: int
    steps: tuple[StepReport, ...]
    started_at: datetime | None = None
    ended_at: datetime | None = None
    error: str | None = None
    cancelled: bool = False
    compensations: tuple[CompensationOutcome, ...] = ()

    @classmethod
    def from_workflow(cls, workflow: Workflow) -> WorkflowStatusReport:
        """Build a snapshot detached from the live workflow."""
        return cls(
            workflow_id=workflow.workflow_id,
            name=workflow.name,
            status=workflow.status,
            current_step_index=workflow.current_step_index,
            total_steps=len(workflow.steps),
            steps=tuple(
                StepReport(
                    step_id=s.step_id,
                    name=s.display_name,
                    service_id=s.service_id,
                    action=s.action,
                    status=s.status,
                    attempts=s.attempts,
                    result=copy.deepcopy(s.result),
                    error=s.error,
                )
                for s in workflow.steps
            ),
            started_at=workflow.started_at,
            ended_at=workflow.ended_at,
            error=workflow.error,
            cancelled=workflow.cancelled,
            compensations=tuple(c.model_copy() for c in workflow.compensations),
        )
