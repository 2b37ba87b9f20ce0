"""
Saga Workflows

Ordered service-call steps with retry, backoff and reverse-order
compensation.
"""

from fleetcore.workflow.engine import WorkflowEngine
from fleetcore.workflow.models import (
    CompensatingAction,
    CompensationOutcome,
    StepStatus,
    Workflow,
    WorkflowHandle,
    WorkflowStatus,
    WorkflowStatusReport,
    WorkflowStep,
)

__all__ = [
    "CompensatingAction",
    "CompensationOutcome",
    "StepStatus",
    "Workflow",
    "WorkflowEngine",
    "WorkflowHandle",
    "WorkflowStatus",
    "WorkflowStatusReport",
    "WorkflowStep",
]
