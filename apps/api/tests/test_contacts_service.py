from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eventcrm.core.database import Base
from eventcrm.crm.models import CRMActivity, CRMWorkspace
from eventcrm.crm.schemas import ContactCreate, ContactUpdate, WorkspaceCreate
from eventcrm.crm.service import ActivityService, ActorUser, ContactService, WorkspaceService
from eventcrm.errors import (
    AlreadyArchivedError,
    ContactArchivedError,
    InvalidInputError,
    NotFoundError,
)


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


def _create_workspace(session: Session, name: str = "Acme") -> uuid.UUID:
    workspace = CRMWorkspace(name=name)
    session.add(workspace)
    session.commit()
    return workspace.id


def _activity_types(session: Session, contact_id: uuid.UUID) -> list[str]:
    rows = session.scalars(
        select(CRMActivity)
        .where(CRMActivity.contact_id == contact_id)
        .order_by(CRMActivity.created_at.asc())
    ).all()
    return [row.type for row in rows]


def test_workspace_service_creates_and_reads_workspace(db_session: Session) -> None:
    service = WorkspaceService()
    actor = ActorUser(user_id="user-1")

    created = service.create_workspace(db_session, actor, WorkspaceCreate(name="  Globex  "))
    assert created.name == "Globex"
    assert service.get_workspace(db_session, created.id).id == created.id

    with pytest.raises(NotFoundError):
        service.get_workspace(db_session, uuid.uuid4())
    assert db_session.scalar(select(func.count()).select_from(CRMActivity)) == 0


def test_create_contact_appends_contact_created_activity(db_session: Session) -> None:
    workspace_id = _create_workspace(db_session)
    actor = ActorUser(user_id="user-1")

    result = ContactService().create_contact(
        db_session,
        actor,
        workspace_id,
        ContactCreate(email="ada@example.com", first_name="Ada", last_name="Lovelace"),
    )

    assert result.contact.email == "ada@example.com"
    assert result.contact.archived_at is None
    assert len(result.activities) == 1
    activity = result.activities[0]
    assert activity.type == "contact_created"
    assert activity.subtype == "contact"
    assert activity.actor_user_id == "user-1"
    assert activity.contact_id == result.contact.id
    assert activity.payload == {
        "contact": {"email": "ada@example.com", "firstName": "Ada", "lastName": "Lovelace"}
    }


def test_create_contact_honours_explicit_occurred_at(db_session: Session) -> None:
    workspace_id = _create_workspace(db_session)

    result = ContactService().create_contact(
        db_session,
        ActorUser(user_id="user-1"),
        workspace_id,
        ContactCreate(first_name="Imported", occurred_at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)),
    )

    stored = db_session.get(CRMActivity, result.activities[0].id)
    assert stored is not None
    assert stored.occurred_at.replace(tzinfo=None) == datetime(2024, 1, 2, 3, 4, 5)


def test_create_contact_requires_actor_and_workspace(db_session: Session) -> None:
    workspace_id = _create_workspace(db_session)
    service = ContactService()

    with pytest.raises(InvalidInputError):
        service.create_contact(db_session, ActorUser(user_id="   "), workspace_id, ContactCreate(first_name="A"))

    with pytest.raises(NotFoundError):
        service.create_contact(db_session, ActorUser(user_id="user-1"), uuid.uuid4(), ContactCreate(first_name="A"))

    assert db_session.scalar(select(func.count()).select_from(CRMActivity)) == 0


def test_update_contact_records_patch(db_session: Session) -> None:
    workspace_id = _create_workspace(db_session)
    actor = ActorUser(user_id="user-1")
    service = ContactService()
    contact = service.create_contact(db_session, actor, workspace_id, ContactCreate(first_name="Ada")).contact

    result = service.update_contact(
        db_session,
        actor,
        workspace_id,
        contact.id,
        ContactUpdate(last_name="Byron", email="ada.byron@example.com"),
    )

    assert result.contact.last_name == "Byron"
    assert result.activities[0].type == "contact_updated"
    assert result.activities[0].payload == {"patch": {"lastName": "Byron", "email": "ada.byron@example.com"}}

    with pytest.raises(InvalidInputError):
        service.update_contact(db_session, actor, workspace_id, contact.id, ContactUpdate())


def test_archive_contact_is_terminal(db_session: Session) -> None:
    workspace_id = _create_workspace(db_session)
    actor = ActorUser(user_id="user-1")
    service = ContactService()
    contact = service.create_contact(db_session, actor, workspace_id, ContactCreate(first_name="Ada")).contact

    archived = service.archive_contact(db_session, actor, workspace_id, contact.id)
    assert archived.contact.archived_at is not None
    assert archived.activities[0].type == "contact_archived"
    assert archived.activities[0].payload["archivedAt"].endswith("Z")

    with pytest.raises(AlreadyArchivedError):
        service.archive_contact(db_session, actor, workspace_id, contact.id)
    with pytest.raises(ContactArchivedError):
        service.update_contact(db_session, actor, workspace_id, contact.id, ContactUpdate(first_name="Eve"))

    assert _activity_types(db_session, contact.id) == ["contact_created", "contact_archived"]
    assert [row.id for row in service.list_contacts(db_session, workspace_id)] == []
    assert [row.id for row in service.list_contacts(db_session, workspace_id, include_archived=True)] == [contact.id]


def test_merge_archives_secondary_and_links_both_timelines(db_session: Session) -> None:
    workspace_id = _create_workspace(db_session)
    actor = ActorUser(user_id="user-1")
    service = ContactService()
    primary = service.create_contact(db_session, actor, workspace_id, ContactCreate(first_name="Primary")).contact
    secondary = service.create_contact(db_session, actor, workspace_id, ContactCreate(first_name="Secondary")).contact

    result = service.merge_contacts(db_session, actor, workspace_id, primary.id, secondary.id)

    assert result.primary.archived_at is None
    assert result.secondary.archived_at is not None
    on_primary, on_secondary = result.activities
    assert on_primary.contact_id == primary.id
    assert on_primary.payload == {"mergedContactId": str(secondary.id)}
    assert on_secondary.contact_id == secondary.id
    assert on_secondary.payload["primaryContactId"] == str(primary.id)
    assert _activity_types(db_session, primary.id) == ["contact_created", "contact_merged"]
    assert _activity_types(db_session, secondary.id) == ["contact_created", "contact_merged"]

    with pytest.raises(AlreadyArchivedError):
        service.merge_contacts(db_session, actor, workspace_id, primary.id, secondary.id)


def test_merge_rejects_self_and_archived_primary(db_session: Session) -> None:
    workspace_id = _create_workspace(db_session)
    actor = ActorUser(user_id="user-1")
    service = ContactService()
    first = service.create_contact(db_session, actor, workspace_id, ContactCreate(first_name="One")).contact
    second = service.create_contact(db_session, actor, workspace_id, ContactCreate(first_name="Two")).contact

    with pytest.raises(InvalidInputError):
        service.merge_contacts(db_session, actor, workspace_id, first.id, first.id)

    service.archive_contact(db_session, actor, workspace_id, first.id)
    with pytest.raises(ContactArchivedError):
        service.merge_contacts(db_session, actor, workspace_id, first.id, second.id)
    assert _activity_types(db_session, second.id) == ["contact_created"]


def test_contacts_are_scoped_to_their_workspace(db_session: Session) -> None:
    workspace_a = _create_workspace(db_session, "A")
    workspace_b = _create_workspace(db_session, "B")
    actor = ActorUser(user_id="user-1")
    service = ContactService()
    contact = service.create_contact(db_session, actor, workspace_a, ContactCreate(first_name="Ada")).contact

    with pytest.raises(NotFoundError):
        service.get_contact(db_session, workspace_b, contact.id)
    with pytest.raises(NotFoundError):
        service.archive_contact(db_session, actor, workspace_b, contact.id)
    with pytest.raises(NotFoundError):
        ActivityService().get_timeline(db_session, workspace_b, contact.id)
    assert service.list_contacts(db_session, workspace_b) == []
