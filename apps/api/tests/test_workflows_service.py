from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eventcrm.core.database import Base
from eventcrm.crm.models import CRMWorkspace
from eventcrm.crm.schemas import (
    AssociateCompanyStep,
    DelayStep,
    SetPropertyStep,
    WorkflowCreate,
    WorkflowStepCreate,
    parse_workflow_step,
)
from eventcrm.crm.service import ActorUser, WorkflowService
from eventcrm.errors import AlreadyArchivedError, InvalidInputError, NotFoundError, UnsupportedActionTypeError


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="ops-1")


@pytest.fixture()
def workspace_id(db_session: Session) -> uuid.UUID:
    workspace = CRMWorkspace(name="Workflows")
    db_session.add(workspace)
    db_session.commit()
    return workspace.id


def test_parse_workflow_step_variants() -> None:
    delay = parse_workflow_step("delay", {"seconds": 1.5})
    assert isinstance(delay, DelayStep)
    assert delay.duration_ms() == 1500
    assert parse_workflow_step("delay", {"ms": 20, "seconds": 9}).duration_ms() == 20

    set_property = parse_workflow_step("set_contact_property", {"propertyKey": "lifecycle", "value": "customer"})
    assert isinstance(set_property, SetPropertyStep)
    assert set_property.property_key == "lifecycle"

    company_id = uuid.uuid4()
    associate = parse_workflow_step("associate_company", {"companyId": str(company_id)})
    assert isinstance(associate, AssociateCompanyStep)
    assert associate.company_id == company_id
    assert associate.role == "other"


def test_parse_workflow_step_rejects_bad_configs() -> None:
    with pytest.raises(UnsupportedActionTypeError) as exc_info:
        parse_workflow_step("send_sms", {})
    assert exc_info.value.details == {"actionType": "send_sms"}

    with pytest.raises(InvalidInputError):
        parse_workflow_step("set_contact_property", {"value": "x"})
    with pytest.raises(InvalidInputError):
        parse_workflow_step("associate_company", {"companyId": "not-a-uuid"})
    with pytest.raises(ValueError):
        parse_workflow_step("delay", {}).duration_ms()
    with pytest.raises(ValueError):
        parse_workflow_step("delay", {"ms": -1}).duration_ms()


def test_create_workflow_starts_disabled_with_ordered_steps(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
) -> None:
    workflow = WorkflowService().create_workflow(
        db_session,
        actor,
        workspace_id,
        WorkflowCreate(
            name="Welcome",
            trigger_types=["contact_created", "contact_created", "note_added"],
            steps=[
                WorkflowStepCreate(action_type="create_task", config={"title": "Call them"}),
                WorkflowStepCreate(action_type="delay", config={"ms": 10}),
            ],
        ),
    )

    assert workflow.enabled is False
    assert workflow.trigger_types == ["contact_created", "note_added"]
    assert [(step.order, step.action_type) for step in workflow.steps] == [(1, "create_task"), (2, "delay")]


@pytest.mark.parametrize(
    ("trigger_types", "steps"),
    [
        ([], []),
        (["not_an_activity_type"], []),
        (["contact_created"], [WorkflowStepCreate(action_type="send_sms")]),
        (["contact_created"], [WorkflowStepCreate(action_type="set_contact_property", config={})]),
    ],
)
def test_create_workflow_validation(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    trigger_types: list[str],
    steps: list[WorkflowStepCreate],
) -> None:
    with pytest.raises((InvalidInputError, UnsupportedActionTypeError)):
        WorkflowService().create_workflow(
            db_session,
            actor,
            workspace_id,
            WorkflowCreate(name="Broken", trigger_types=trigger_types, steps=steps),
        )
    assert WorkflowService().list_workflows(db_session, workspace_id) == []


def test_enable_disable_archive(db_session: Session, actor: ActorUser, workspace_id: uuid.UUID) -> None:
    service = WorkflowService()
    workflow = service.create_workflow(
        db_session,
        actor,
        workspace_id,
        WorkflowCreate(name="Notify", trigger_types=["deal_won"]),
    )

    assert service.enable_workflow(db_session, actor, workspace_id, workflow.id).enabled is True
    assert service.disable_workflow(db_session, actor, workspace_id, workflow.id).enabled is False

    service.enable_workflow(db_session, actor, workspace_id, workflow.id)
    archived = service.archive_workflow(db_session, actor, workspace_id, workflow.id)
    assert archived.archived_at is not None
    assert archived.enabled is False

    with pytest.raises(AlreadyArchivedError):
        service.enable_workflow(db_session, actor, workspace_id, workflow.id)
    with pytest.raises(AlreadyArchivedError):
        service.archive_workflow(db_session, actor, workspace_id, workflow.id)

    assert service.list_workflows(db_session, workspace_id) == []
    assert [item.id for item in service.list_workflows(db_session, workspace_id, include_archived=True)] == [workflow.id]
    assert service.list_executions(db_session, workspace_id, workflow.id) == []

    with pytest.raises(NotFoundError):
        service.enable_workflow(db_session, actor, uuid.uuid4(), workflow.id)
