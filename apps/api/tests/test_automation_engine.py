from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from typing import Any

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eventcrm.core.database import Base
from eventcrm.crm.automation import AutomationConfig, AutomationEngine, WorkflowExecutor, idempotency_key
from eventcrm.crm.models import (
    CRMActivity,
    CRMContactCompanyAssociation,
    CRMContactPropertyValue,
    CRMWorkflowExecution,
    CRMWorkspace,
)
from eventcrm.crm.schemas import (
    CompanyCreate,
    ContactCreate,
    NoteLog,
    PropertyDefinitionCreate,
    WorkflowCreate,
    WorkflowStepCreate,
)
from eventcrm.crm.service import (
    ActorUser,
    CompanyService,
    ContactPropertyService,
    ContactService,
    EngagementService,
    PropertyDefinitionService,
    WorkflowService,
)
from eventcrm.errors import NotFoundError


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="user-1")


@pytest.fixture()
def workspace_id(db_session: Session) -> uuid.UUID:
    workspace = CRMWorkspace(name="Automation")
    db_session.add(workspace)
    db_session.commit()
    return workspace.id


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture()
def automation(session_factory: sessionmaker[Session], sleeper: RecordingSleep) -> AutomationEngine:
    return AutomationEngine(
        session_factory,
        AutomationConfig(poll_interval_ms=10, batch_size=50, initial_lookback_ms=60_000),
        sleep=sleeper,
    )


def _workflow(
    session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    trigger_types: list[str],
    steps: list[tuple[str, dict[str, Any]]],
    *,
    enabled: bool = True,
) -> uuid.UUID:
    service = WorkflowService()
    workflow = service.create_workflow(
        session,
        actor,
        workspace_id,
        WorkflowCreate(
            name="Automation under test",
            trigger_types=trigger_types,
            steps=[WorkflowStepCreate(action_type=action, config=config) for action, config in steps],
        ),
    )
    if enabled:
        service.enable_workflow(session, actor, workspace_id, workflow.id)
    return workflow.id


def _contact(session: Session, actor: ActorUser, workspace_id: uuid.UUID, name: str = "Ada") -> uuid.UUID:
    return ContactService().create_contact(session, actor, workspace_id, ContactCreate(first_name=name)).contact.id


def _activities(session: Session, contact_id: uuid.UUID) -> list[CRMActivity]:
    session.expire_all()
    return list(
        session.scalars(
            select(CRMActivity)
            .where(CRMActivity.contact_id == contact_id)
            .order_by(CRMActivity.created_at.asc())
        ).all()
    )


def _executions(session: Session, workflow_id: uuid.UUID) -> list[CRMWorkflowExecution]:
    session.expire_all()
    return list(session.scalars(select(CRMWorkflowExecution).where(CRMWorkflowExecution.workflow_id == workflow_id)).all())


def _trigger_id(session: Session, contact_id: uuid.UUID, activity_type: str) -> uuid.UUID:
    return next(activity.id for activity in _activities(session, contact_id) if activity.type == activity_type)


def test_idempotency_key_is_stable_sha256() -> None:
    workflow_id = uuid.UUID("00000000-0000-0000-0000-000000000001")
    activity_id = uuid.UUID("00000000-0000-0000-0000-000000000002")
    key = idempotency_key(workflow_id, activity_id)
    assert key == idempotency_key(workflow_id, activity_id)
    assert len(key) == 64
    assert key != idempotency_key(activity_id, workflow_id)


def test_tick_runs_matching_workflow_once(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    PropertyDefinitionService().create_definition(
        db_session,
        actor,
        workspace_id,
        PropertyDefinitionCreate(key="lifecycle", label="Lifecycle", type="enum", options=["lead", "customer"]),
    )
    workflow_id = _workflow(
        db_session,
        actor,
        workspace_id,
        ["contact_created"],
        [
            ("create_task", {"title": "Welcome call"}),
            ("set_contact_property", {"propertyKey": "lifecycle", "value": "lead"}),
        ],
    )
    contact_id = _contact(db_session, actor, workspace_id)

    assert automation.tick() == 1

    executions = _executions(db_session, workflow_id)
    assert len(executions) == 1
    execution = executions[0]
    assert execution.status == "success"
    assert execution.error is None
    assert execution.contact_id == contact_id
    trigger_id = _trigger_id(db_session, contact_id, "contact_created")
    assert execution.activity_id == trigger_id
    assert execution.idempotency_key == idempotency_key(workflow_id, trigger_id)

    activities = _activities(db_session, contact_id)
    assert [activity.type for activity in activities] == [
        "contact_created",
        "automation_task_created",
        "automation_property_updated",
        "automation_execution_succeeded",
    ]
    task = activities[1]
    assert task.actor_user_id == "automation"
    assert task.subtype == "system"
    assert task.payload == {
        "workflowId": str(workflow_id),
        "triggerActivityId": str(trigger_id),
        "task": {"title": "Welcome call"},
    }
    assert activities[2].payload["changed"] is True
    assert ContactPropertyService().get_properties(db_session, workspace_id, contact_id).properties == {"lifecycle": "lead"}

    assert automation.tick() == 0
    assert len(_executions(db_session, workflow_id)) == 1


def test_restarted_engine_does_not_execute_twice(
    session_factory: sessionmaker[Session],
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    workflow_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {"title": "Hi"})])
    contact_id = _contact(db_session, actor, workspace_id)
    automation.tick()

    restarted = AutomationEngine(session_factory, AutomationConfig(initial_lookback_ms=60_000))
    assert restarted.tick() == 1

    assert len(_executions(db_session, workflow_id)) == 1
    types = [activity.type for activity in _activities(db_session, contact_id)]
    assert types.count("automation_task_created") == 1
    assert types.count("automation_execution_succeeded") == 1


def test_execute_returns_existing_execution(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    workflow_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {})])
    contact_id = _contact(db_session, actor, workspace_id)
    trigger_id = _trigger_id(db_session, contact_id, "contact_created")

    first = automation.executor.execute(db_session, workflow_id, trigger_id)
    second = automation.executor.execute(db_session, workflow_id, trigger_id)

    assert first is not None and second is not None
    assert first.id == second.id
    assert len(_activities(db_session, contact_id)) == 3


def test_set_property_step_converges_without_new_value_row(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    PropertyDefinitionService().create_definition(
        db_session,
        actor,
        workspace_id,
        PropertyDefinitionCreate(key="lifecycle", label="Lifecycle", type="string"),
    )
    contact_id = _contact(db_session, actor, workspace_id)
    ContactPropertyService().set_property(db_session, actor, workspace_id, contact_id, "lifecycle", "customer")
    workflow_id = _workflow(
        db_session,
        actor,
        workspace_id,
        ["email_opened"],
        [("set_contact_property", {"propertyKey": "lifecycle", "value": "customer"})],
    )
    opened = EngagementService().log_email_opened(db_session, actor, workspace_id, contact_id, "msg-signed")

    automation.tick()

    updated = [activity for activity in _activities(db_session, contact_id) if activity.type == "automation_property_updated"]
    assert len(updated) == 1
    assert updated[0].payload["changed"] is False
    assert updated[0].payload["triggerActivityId"] == str(opened.id)
    assert db_session.scalar(select(func.count()).select_from(CRMContactPropertyValue)) == 1
    assert [execution.status for execution in _executions(db_session, workflow_id)] == ["success"]


def test_associate_company_step_is_convergent(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    owner_id = _contact(db_session, actor, workspace_id, "Owner")
    company_id = CompanyService().create_company(
        db_session,
        actor,
        workspace_id,
        CompanyCreate(contact_id=owner_id, name="Initech"),
    ).company.id
    _workflow(
        db_session,
        actor,
        workspace_id,
        ["email_opened"],
        [
            ("associate_company", {"companyId": str(company_id), "role": "employee"}),
            ("associate_company", {"companyId": str(company_id), "role": "employee"}),
        ],
    )
    EngagementService().log_email_opened(db_session, actor, workspace_id, owner_id, "msg-initech")

    automation.tick()

    associated = [a for a in _activities(db_session, owner_id) if a.type == "automation_company_associated"]
    assert [activity.payload["changed"] for activity in associated] == [True, False]
    rows = db_session.scalars(select(CRMContactCompanyAssociation)).all()
    assert [(row.contact_id, row.company_id, row.role) for row in rows] == [(owner_id, company_id, "employee")]


def test_failed_step_rolls_back_earlier_steps(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    workflow_id = _workflow(
        db_session,
        actor,
        workspace_id,
        ["contact_created"],
        [
            ("create_task", {"title": "Never persisted"}),
            ("set_contact_property", {"propertyKey": "missing_key", "value": "x"}),
        ],
    )
    contact_id = _contact(db_session, actor, workspace_id)

    automation.tick()

    executions = _executions(db_session, workflow_id)
    assert [execution.status for execution in executions] == ["failed"]
    assert "missing_key" in (executions[0].error or "")
    activities = _activities(db_session, contact_id)
    assert [activity.type for activity in activities] == ["contact_created", "automation_execution_failed"]
    assert "missing_key" in activities[1].payload["error"]

    # A recorded failure is final for the pair.
    assert automation.executor.execute(db_session, workflow_id, activities[0].id).id == executions[0].id


def test_delay_step_uses_injected_sleep(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
    sleeper: RecordingSleep,
) -> None:
    _workflow(db_session, actor, workspace_id, ["contact_created"], [("delay", {"ms": 250}), ("delay", {"seconds": 2})])
    _contact(db_session, actor, workspace_id)

    automation.tick()

    assert sleeper.calls == [0.25, 2.0]


def test_disabled_and_foreign_workflows_do_not_run(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    other_workspace = CRMWorkspace(name="Elsewhere")
    db_session.add(other_workspace)
    db_session.commit()
    disabled_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {})], enabled=False)
    foreign_id = _workflow(db_session, actor, other_workspace.id, ["contact_created"], [("create_task", {})])
    other_trigger_id = _workflow(db_session, actor, workspace_id, ["note_added"], [("create_task", {})])
    _contact(db_session, actor, workspace_id)

    assert automation.tick() == 1

    for workflow_id in (disabled_id, foreign_id, other_trigger_id):
        assert _executions(db_session, workflow_id) == []


def test_direct_execution_of_disabled_workflow_is_recorded_as_skipped(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    workflow_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {})], enabled=False)
    contact_id = _contact(db_session, actor, workspace_id)
    trigger_id = _trigger_id(db_session, contact_id, "contact_created")

    execution = automation.executor.execute(db_session, workflow_id, trigger_id)

    assert execution is not None
    assert execution.status == "skipped"
    skipped = [a for a in _activities(db_session, contact_id) if a.type == "automation_execution_skipped"]
    assert len(skipped) == 1
    assert skipped[0].payload["reason"] == "disabled"

    with pytest.raises(NotFoundError):
        automation.executor.execute(db_session, workflow_id, uuid.uuid4())


def test_losing_a_race_discards_step_writes(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    sleeper: RecordingSleep,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    workflow_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {"title": "Racy"})])
    contact_id = _contact(db_session, actor, workspace_id)
    trigger_id = _trigger_id(db_session, contact_id, "contact_created")
    winner = CRMWorkflowExecution(
        workspace_id=workspace_id,
        workflow_id=workflow_id,
        activity_id=trigger_id,
        contact_id=contact_id,
        status="success",
        idempotency_key=idempotency_key(workflow_id, trigger_id),
    )
    db_session.add(winner)
    db_session.commit()
    winner_id = winner.id

    executor = WorkflowExecutor(sleep=sleeper)
    original_find = WorkflowExecutor._find_execution
    calls = {"count": 0}

    def find_after_first_miss(
        self: WorkflowExecutor, session: Session, wf_id: uuid.UUID, act_id: uuid.UUID
    ) -> CRMWorkflowExecution | None:
        calls["count"] += 1
        if calls["count"] == 1:
            return None
        return original_find(self, session, wf_id, act_id)

    monkeypatch.setattr(WorkflowExecutor, "_find_execution", find_after_first_miss)

    result = executor.execute(db_session, workflow_id, trigger_id)

    assert result is not None
    assert result.id == winner_id
    assert [activity.type for activity in _activities(db_session, contact_id)] == ["contact_created"]


def test_tick_is_skipped_while_previous_tick_runs(
    automation: AutomationEngine,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    automation._running = True

    assert automation.tick() == 0
    assert any(record.getMessage() == "automation.tick_skipped" for record in caplog.records)


def test_tick_logs_execution_with_automation_actor(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    workflow_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {})])
    _contact(db_session, actor, workspace_id)

    automation.tick()

    records = [
        record
        for record in caplog.records
        if record.name == "eventcrm.crm.automation" and record.getMessage() == "automation.execution_succeeded"
    ]
    assert records
    assert getattr(records[0], "workflow_id", None) == str(workflow_id)
    assert getattr(records[0], "status", None) == "success"


def test_watermark_advances_past_processed_triggers(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    initial = automation.watermark
    contact_id = _contact(db_session, actor, workspace_id)

    assert automation.tick() == 1
    assert automation.watermark.replace(tzinfo=None) > initial.replace(tzinfo=None)

    EngagementService().log_note(db_session, actor, workspace_id, contact_id, NoteLog(body="not a trigger"))
    assert automation.tick() == 0
    EngagementService().log_email_opened(db_session, actor, workspace_id, contact_id, "msg-again")
    assert automation.tick() == 1
    assert automation.tick() == 0


def test_start_and_stop_manage_background_thread(automation: AutomationEngine) -> None:
    automation.start()
    try:
        assert automation.is_started
    finally:
        automation.stop(timeout=2.0)
    assert not automation.is_started


def test_only_polled_trigger_types_start_workflows(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    note_workflow_id = _workflow(db_session, actor, workspace_id, ["note_added", "contact_updated"], [("create_task", {})])
    contact_id = _contact(db_session, actor, workspace_id)
    EngagementService().log_note(db_session, actor, workspace_id, contact_id, NoteLog(body="Left a voicemail"))

    assert automation.tick() == 1

    assert _executions(db_session, note_workflow_id) == []
    assert [activity.type for activity in _activities(db_session, contact_id)] == ["contact_created", "note_added"]


def test_tick_failure_is_logged_and_next_tick_recovers(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
    caplog: pytest.LogCaptureFixture,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    caplog.set_level(logging.INFO)
    workflow_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {})])
    _contact(db_session, actor, workspace_id, "Lost")

    def broken_lookup(session: Session, trigger: Any) -> list[uuid.UUID]:
        raise RuntimeError("workflow lookup failed")

    monkeypatch.setattr(automation, "_matching_workflow_ids", broken_lookup)
    assert automation.tick() == 0
    failures = [record for record in caplog.records if record.getMessage() == "automation.tick_failed"]
    assert failures
    assert getattr(failures[0], "error", None) == "workflow lookup failed"
    assert _executions(db_session, workflow_id) == []

    monkeypatch.undo()
    contact_id = _contact(db_session, actor, workspace_id, "Found")

    assert automation.tick() == 1
    executions = _executions(db_session, workflow_id)
    assert [execution.status for execution in executions] == ["success"]
    assert executions[0].contact_id == contact_id


def test_failing_workflow_does_not_stop_the_batch(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    failing_id = _workflow(
        db_session,
        actor,
        workspace_id,
        ["contact_created"],
        [("set_contact_property", {"propertyKey": "missing_key", "value": "x"})],
    )
    healthy_id = _workflow(db_session, actor, workspace_id, ["contact_created"], [("create_task", {"title": "Welcome"})])
    first_id = _contact(db_session, actor, workspace_id, "First")
    second_id = _contact(db_session, actor, workspace_id, "Second")

    assert automation.tick() == 2

    assert sorted(execution.status for execution in _executions(db_session, failing_id)) == ["failed", "failed"]
    healthy = _executions(db_session, healthy_id)
    assert [execution.status for execution in healthy] == ["success", "success"]
    assert {execution.contact_id for execution in healthy} == {first_id, second_id}
    for contact_id in (first_id, second_id):
        types = [activity.type for activity in _activities(db_session, contact_id)]
        assert types.count("automation_task_created") == 1
        assert types.count("automation_execution_failed") == 1


def test_set_property_treats_integral_float_as_unchanged(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    automation: AutomationEngine,
) -> None:
    PropertyDefinitionService().create_definition(
        db_session,
        actor,
        workspace_id,
        PropertyDefinitionCreate(key="budget", label="Budget", type="number"),
    )
    contact_id = _contact(db_session, actor, workspace_id)
    ContactPropertyService().set_property(db_session, actor, workspace_id, contact_id, "budget", 1000)
    _workflow(
        db_session,
        actor,
        workspace_id,
        ["email_opened"],
        [("set_contact_property", {"propertyKey": "budget", "value": 1000.0})],
    )
    EngagementService().log_email_opened(db_session, actor, workspace_id, contact_id, "msg-budget")

    automation.tick()

    updated = [activity for activity in _activities(db_session, contact_id) if activity.type == "automation_property_updated"]
    assert len(updated) == 1
    assert updated[0].payload["changed"] is False
    assert db_session.scalar(select(func.count()).select_from(CRMContactPropertyValue)) == 1
