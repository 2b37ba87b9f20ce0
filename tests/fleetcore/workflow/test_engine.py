"""
Tests for Saga Workflow Engine

Covers ordered execution, retries with backoff, reverse-order compensation,
cancellation and status snapshots.
"""

from __future__ import annotations

import asyncio

import pytest

from fleetcore import events
from fleetcore.config import OrchestratorSettings, WorkflowSettings
from fleetcore.events import Event
from fleetcore.exceptions import WorkflowNotFoundError
from fleetcore.orchestrator import Orchestrator
from fleetcore.workflow import (
    CompensatingAction,
    StepStatus,
    Workflow,
    WorkflowEngine,
    WorkflowHandle,
    WorkflowStatus,
    WorkflowStep,
)
from tests.fleetcore.fakes import FakeTransport, make_instance, make_service, wait_until

SERVICES = ("inventory", "payments", "shipping")


@pytest.fixture
def orchestrator(transport: FakeTransport, settings: OrchestratorSettings) -> Orchestrator:
    """Create orchestrator whose breakers tolerate a full retry sequence."""
    tolerant = settings.model_copy(
        update={
            "circuit_breaker": settings.circuit_breaker.model_copy(
                update={"failure_threshold": 10}
            )
        }
    )
    return Orchestrator(transport, settings=tolerant)


@pytest.fixture
def engine(orchestrator: Orchestrator, workflow_settings: WorkflowSettings) -> WorkflowEngine:
    """Create workflow engine for testing."""
    return WorkflowEngine(orchestrator, workflow_settings)


def _open_circuit(orchestrator: Orchestrator, service_id: str) -> None:
    breaker = orchestrator.get_circuit_breaker(service_id)
    for _ in range(breaker.config.failure_threshold):
        breaker.record_failure()


async def _register_services(orchestrator: Orchestrator) -> None:
    for service_id in SERVICES:
        await orchestrator.register_service(
            make_service(service_id), [make_instance(service_id, f"{service_id}-1")]
        )


def _step(service_id: str, action: str, undo: str | None = None, **kwargs) -> WorkflowStep:
    return WorkflowStep(
        service_id=service_id,
        action=action,
        compensation=(
            CompensatingAction(service_id=service_id, action=undo) if undo else None
        ),
        **kwargs,
    )


def _order_workflow() -> Workflow:
    return Workflow(
        name="place-order",
        steps=[
            _step("inventory", "reserveInventory", "releaseInventory", params={"sku": "X-1"}),
            _step("payments", "chargePayment", "refund"),
            _step("shipping", "createShipment", "cancelShipment"),
        ],
    )


@pytest.mark.asyncio
async def test_all_steps_complete(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test a successful workflow runs every step in order."""
    await _register_services(orchestrator)

    report = await engine.execute(_order_workflow())

    assert report.status == WorkflowStatus.COMPLETED
    assert report.current_step_index == 3
    assert [s.status for s in report.steps] == [StepStatus.COMPLETED] * 3
    assert transport.actions() == [
        ("inventory", "reserveInventory"),
        ("payments", "chargePayment"),
        ("shipping", "createShipment"),
    ]
    assert report.steps[0].result["params"] == {"sku": "X-1"}
    assert report.compensations == ()


@pytest.mark.asyncio
async def test_failed_step_compensates_only_completed_steps(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test payment failure releases inventory but never refunds."""
    await _register_services(orchestrator)
    transport.behaviors[("payments", "chargePayment")] = RuntimeError("card declined")
    workflow = Workflow(
        name="checkout",
        steps=[
            _step("inventory", "reserveInventory", "releaseInventory"),
            _step("payments", "chargePayment", "refund"),
        ],
    )

    report = await engine.execute(workflow)

    assert report.status == WorkflowStatus.FAILED
    assert report.steps[0].status == StepStatus.COMPLETED
    assert report.steps[1].status == StepStatus.FAILED
    # One attempt plus two retries
    assert report.steps[1].attempts == 3
    assert "card declined" in report.steps[1].error
    assert ("inventory", "releaseInventory") in transport.actions()
    assert ("payments", "refund") not in transport.actions()
    assert [c.action for c in report.compensations] == ["releaseInventory"]


@pytest.mark.asyncio
async def test_compensations_run_in_reverse_order(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test rollback undoes completed steps last to first."""
    await _register_services(orchestrator)
    workflow = _order_workflow()
    workflow.steps.append(_step("payments", "settle", max_retries=0))
    transport.behaviors[("payments", "settle")] = RuntimeError("ledger locked")

    report = await engine.execute(workflow)

    assert report.status == WorkflowStatus.FAILED
    assert report.current_step_index == 3
    compensations = [
        a for a in transport.actions() if a[1] in {"releaseInventory", "refund", "cancelShipment"}
    ]
    assert compensations == [
        ("shipping", "cancelShipment"),
        ("payments", "refund"),
        ("inventory", "releaseInventory"),
    ]


@pytest.mark.asyncio
async def test_failed_third_step_is_never_compensated(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test step 3 failing rolls back step 2 then step 1 only."""
    await _register_services(orchestrator)
    transport.behaviors[("shipping", "createShipment")] = RuntimeError("no carrier")

    report = await engine.execute(_order_workflow())

    assert report.status == WorkflowStatus.FAILED
    assert [(c.service_id, c.action) for c in report.compensations] == [
        ("payments", "refund"),
        ("inventory", "releaseInventory"),
    ]
    assert ("shipping", "cancelShipment") not in transport.actions()
    assert transport.actions()[-2:] == [
        ("payments", "refund"),
        ("inventory", "releaseInventory"),
    ]


@pytest.mark.asyncio
async def test_retry_then_succeed(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test transient failures are retried."""
    await _register_services(orchestrator)
    outcomes = [RuntimeError("flaky"), {"charged": True}]

    def charge(request):
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    transport.behaviors[("payments", "chargePayment")] = charge
    workflow = Workflow(name="pay", steps=[_step("payments", "chargePayment")])

    report = await engine.execute(workflow)

    assert report.status == WorkflowStatus.COMPLETED
    assert report.steps[0].attempts == 2
    assert report.steps[0].result == {"charged": True}


@pytest.mark.asyncio
async def test_backoff_delays_double(
    orchestrator: Orchestrator,
    transport: FakeTransport,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Test retry delays grow exponentially up to the cap."""
    await _register_services(orchestrator)
    transport.behaviors[("payments", "chargePayment")] = RuntimeError("down")
    engine = WorkflowEngine(
        orchestrator,
        WorkflowSettings(
            default_max_retries=4,
            retry_base_delay_seconds=1.0,
            retry_max_delay_seconds=5.0,
        ),
    )
    delays: list[float] = []
    real_sleep = asyncio.sleep

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)
        await real_sleep(0)

    monkeypatch.setattr("fleetcore.workflow.engine.asyncio.sleep", fake_sleep)

    report = await engine.execute(Workflow(name="pay", steps=[_step("payments", "chargePayment")]))

    assert report.status == WorkflowStatus.FAILED
    assert report.steps[0].attempts == 5
    assert delays == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
async def test_timeout_is_retried(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test a step exceeding its deadline counts as a failed attempt."""
    await _register_services(orchestrator)
    transport.delay = 0.2
    workflow = Workflow(
        name="slow",
        steps=[_step("shipping", "createShipment", timeout_seconds=0.01, max_retries=1)],
    )

    report = await engine.execute(workflow)

    assert report.status == WorkflowStatus.FAILED
    assert report.steps[0].attempts == 2
    assert "timed out" in report.steps[0].error


@pytest.mark.asyncio
async def test_open_circuit_is_not_retried(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test a circuit rejection fails the step without further attempts."""
    await _register_services(orchestrator)
    _open_circuit(orchestrator, "payments")

    report = await engine.execute(
        Workflow(name="pay", steps=[_step("payments", "chargePayment")])
    )

    assert report.status == WorkflowStatus.FAILED
    assert report.steps[0].attempts == 1
    assert "Circuit breaker is open" in report.steps[0].error
    assert transport.calls == []


@pytest.mark.asyncio
async def test_compensation_respects_open_circuit(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test compensations are rejected by an open breaker and reported."""
    await _register_services(orchestrator)

    def open_inventory_circuit(request):
        _open_circuit(orchestrator, "inventory")
        raise RuntimeError("card declined")

    transport.behaviors[("payments", "chargePayment")] = open_inventory_circuit
    workflow = Workflow(
        name="checkout",
        steps=[
            _step("inventory", "reserveInventory", "releaseInventory"),
            _step("payments", "chargePayment", max_retries=0),
        ],
    )

    report = await engine.execute(workflow)

    assert report.status == WorkflowStatus.FAILED
    assert ("inventory", "releaseInventory") not in transport.actions()
    assert len(report.compensations) == 1
    assert not report.compensations[0].succeeded
    assert "Circuit breaker is open" in report.compensations[0].error


@pytest.mark.asyncio
async def test_compensation_can_bypass_open_circuit(
    orchestrator: Orchestrator, transport: FakeTransport, workflow_settings: WorkflowSettings
) -> None:
    """Test compensations can be configured to ignore an open breaker."""
    await _register_services(orchestrator)
    engine = WorkflowEngine(
        orchestrator,
        workflow_settings.model_copy(update={"compensation_bypass_circuit_breaker": True}),
    )

    def open_inventory_circuit(request):
        _open_circuit(orchestrator, "inventory")
        raise RuntimeError("card declined")

    transport.behaviors[("payments", "chargePayment")] = open_inventory_circuit
    workflow = Workflow(
        name="checkout",
        steps=[
            _step("inventory", "reserveInventory", "releaseInventory"),
            _step("payments", "chargePayment", max_retries=0),
        ],
    )

    report = await engine.execute(workflow)

    assert ("inventory", "releaseInventory") in transport.actions()
    assert report.compensations[0].succeeded


@pytest.mark.asyncio
async def test_compensation_failure_is_reported(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test a failing compensation does not stop the remaining rollback."""
    await _register_services(orchestrator)
    transport.behaviors[("payments", "refund")] = RuntimeError("refund rejected")
    workflow = _order_workflow()
    workflow.steps[2] = _step("shipping", "createShipment", max_retries=0)
    transport.behaviors[("shipping", "createShipment")] = RuntimeError("no carrier")

    report = await engine.execute(workflow)

    assert report.status == WorkflowStatus.FAILED
    assert [(c.action, c.succeeded) for c in report.compensations] == [
        ("refund", False),
        ("releaseInventory", True),
    ]
    assert "refund rejected" in report.compensations[0].error


@pytest.mark.asyncio
async def test_step_without_compensation_is_skipped(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test steps with nothing to undo are passed over during rollback."""
    await _register_services(orchestrator)
    transport.behaviors[("payments", "chargePayment")] = RuntimeError("declined")
    workflow = Workflow(
        name="checkout",
        steps=[
            _step("inventory", "reserveInventory", "releaseInventory"),
            _step("shipping", "quote"),
            _step("payments", "chargePayment", max_retries=0),
        ],
    )

    report = await engine.execute(workflow)

    assert [c.action for c in report.compensations] == ["releaseInventory"]


@pytest.mark.asyncio
async def test_unknown_service_fails_step(engine: WorkflowEngine) -> None:
    """Test a step targeting an unregistered service fails immediately."""
    report = await engine.execute(Workflow(name="ghost", steps=[_step("ghost", "haunt")]))

    assert report.status == WorkflowStatus.FAILED
    assert report.steps[0].attempts == 1
    assert "Service not found" in report.steps[0].error


@pytest.mark.asyncio
async def test_zero_step_workflow(engine: WorkflowEngine) -> None:
    """Test an empty workflow completes at once."""
    report = await engine.execute(Workflow(name="noop"))

    assert report.status == WorkflowStatus.COMPLETED
    assert report.total_steps == 0
    assert report.current_step_index == 0
    assert report.ended_at is not None


@pytest.mark.asyncio
async def test_submit_and_wait(
    engine: WorkflowEngine, orchestrator: Orchestrator
) -> None:
    """Test background submission and status queries."""
    await _register_services(orchestrator)
    workflow = _order_workflow()

    handle = await engine.submit_workflow(workflow)
    assert handle == WorkflowHandle(workflow_id=workflow.workflow_id)

    report = await engine.wait(handle, timeout=2.0)

    assert report.status == WorkflowStatus.COMPLETED
    assert engine.get_workflow_status(handle) == report
    assert engine.get_workflow_status(handle.workflow_id) == report


@pytest.mark.asyncio
async def test_status_snapshot_is_detached(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test snapshots do not change as the workflow progresses."""
    await _register_services(orchestrator)
    release = asyncio.Event()

    async def held(request):
        await release.wait()
        return {"charged": True}

    transport.behaviors[("payments", "chargePayment")] = held
    handle = await engine.submit_workflow(_order_workflow())
    await wait_until(
        lambda: engine.get_workflow_status(handle).steps[1].status == StepStatus.RUNNING
    )

    during = engine.get_workflow_status(handle)
    assert during == engine.get_workflow_status(handle)

    release.set()
    await engine.wait(handle, timeout=2.0)

    assert during.status == WorkflowStatus.RUNNING
    assert during.current_step_index == 1
    assert during.steps[1].status == StepStatus.RUNNING


@pytest.mark.asyncio
async def test_cancel_in_flight_step_compensates(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test cancelling during a step rolls back completed work."""
    await _register_services(orchestrator)
    started = asyncio.Event()

    async def hang(request):
        started.set()
        await asyncio.sleep(3600)

    transport.behaviors[("payments", "chargePayment")] = hang
    workflow = _order_workflow()
    workflow.steps[1].timeout_seconds = 60.0
    handle = await engine.submit_workflow(workflow)
    await asyncio.wait_for(started.wait(), timeout=2.0)

    assert await engine.cancel(handle)
    report = await engine.wait(handle, timeout=2.0)

    assert report.status == WorkflowStatus.FAILED
    assert report.cancelled
    assert report.steps[1].status == StepStatus.FAILED
    assert report.steps[2].status == StepStatus.PENDING
    assert [c.action for c in report.compensations] == ["releaseInventory"]
    # Cancelled call does not count against the breaker
    assert orchestrator.get_circuit_breaker("payments").stats.failure_count == 0


@pytest.mark.asyncio
async def test_cancelling_engine_task_compensates(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test cancelling the task that runs a workflow still rolls back."""
    await _register_services(orchestrator)
    started = asyncio.Event()

    async def hang(request):
        started.set()
        await asyncio.sleep(3600)

    transport.behaviors[("payments", "chargePayment")] = hang
    workflow = _order_workflow()
    workflow.steps[1].timeout_seconds = 60.0
    task = asyncio.create_task(engine.execute(workflow))
    await asyncio.wait_for(started.wait(), timeout=2.0)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    report = engine.get_workflow_status(workflow.workflow_id)
    assert report.status == WorkflowStatus.FAILED
    assert report.cancelled
    assert [s.status for s in report.steps] == [
        StepStatus.COMPLETED,
        StepStatus.FAILED,
        StepStatus.PENDING,
    ]
    assert [c.action for c in report.compensations] == ["releaseInventory"]
    assert report.compensations[0].succeeded
    assert transport.actions()[-1] == ("inventory", "releaseInventory")


@pytest.mark.asyncio
async def test_cancel_between_steps(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test a cancellation seen before the next step leaves it pending."""
    await _register_services(orchestrator)
    workflow = _order_workflow()
    accepted: list[bool] = []

    def cancel_after_first_step(event: Event) -> None:
        if event.payload["step_index"] == 0:
            accepted.append(engine.request_cancellation(workflow.workflow_id))

    orchestrator.event_bus.subscribe(events.WORKFLOW_STEP_COMPLETED, cancel_after_first_step)

    report = await engine.execute(workflow)

    assert accepted == [True]
    assert report.status == WorkflowStatus.FAILED
    assert report.cancelled
    assert report.current_step_index == 0
    assert "Cancelled before step" in report.error
    assert report.steps[0].status == StepStatus.COMPLETED
    assert report.steps[1].status == StepStatus.PENDING
    assert report.steps[2].status == StepStatus.PENDING
    assert transport.actions() == [
        ("inventory", "reserveInventory"),
        ("inventory", "releaseInventory"),
    ]
    assert [c.action for c in report.compensations] == ["releaseInventory"]


@pytest.mark.asyncio
async def test_cancel_finished_workflow(engine: WorkflowEngine) -> None:
    """Test cancelling a finished workflow is a no-op."""
    workflow = Workflow(name="noop")
    await engine.execute(workflow)

    assert not await engine.cancel(workflow.workflow_id)


@pytest.mark.asyncio
async def test_unknown_handle(engine: WorkflowEngine) -> None:
    """Test lookups of untracked workflows fail."""
    with pytest.raises(WorkflowNotFoundError):
        engine.get_workflow_status("missing")
    with pytest.raises(WorkflowNotFoundError):
        await engine.cancel(WorkflowHandle(workflow_id="missing"))


@pytest.mark.asyncio
async def test_resubmit_rejected(engine: WorkflowEngine) -> None:
    """Test a workflow can be run only once."""
    workflow = Workflow(name="noop")
    await engine.execute(workflow)

    with pytest.raises(ValueError):
        await engine.submit_workflow(workflow)


@pytest.mark.asyncio
async def test_forget(engine: WorkflowEngine, orchestrator: Orchestrator) -> None:
    """Test finished workflows can be discarded, active ones cannot."""
    await _register_services(orchestrator)
    done = Workflow(name="noop")
    await engine.execute(done)

    engine.forget(done.workflow_id)

    with pytest.raises(WorkflowNotFoundError):
        engine.get_workflow_status(done.workflow_id)
    assert engine.list_workflows() == []


@pytest.mark.asyncio
async def test_events_published(
    engine: WorkflowEngine, orchestrator: Orchestrator, transport: FakeTransport
) -> None:
    """Test workflow progress is published on the event bus."""
    await _register_services(orchestrator)
    received: list[Event] = []
    orchestrator.event_bus.subscribe(events.WILDCARD, received.append)
    transport.behaviors[("payments", "chargePayment")] = RuntimeError("declined")
    workflow = Workflow(
        name="checkout",
        steps=[
            _step("inventory", "reserveInventory", "releaseInventory"),
            _step("payments", "chargePayment", max_retries=0),
        ],
    )

    await engine.execute(workflow)

    names = [e.name for e in received if e.name.startswith("workflow.")]
    assert names == [
        events.WORKFLOW_STARTED,
        events.WORKFLOW_STEP_COMPLETED,
        events.WORKFLOW_STEP_FAILED,
        events.WORKFLOW_FINISHED,
    ]
    assert received[-1].payload["status"] == "failed"
