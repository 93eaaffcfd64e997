from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eventcrm.core.config import get_settings
from eventcrm.core.database import Base
from eventcrm.crm.activities import emit_activity, isoformat_z, to_json_value
from eventcrm.crm.models import CRMWorkspace
from eventcrm.crm.schemas import CallLog, ContactCreate, EmailLog, MeetingLog, NoteLog, TaskLog
from eventcrm.crm.service import ActivityService, ActorUser, ContactService, EngagementService
from eventcrm.errors import AlreadyArchivedError, ContactArchivedError, InvalidInputError, NotFoundError


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


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("ACTIVITY_PAGE_SIZE_DEFAULT", "3")
    monkeypatch.setenv("ACTIVITY_PAGE_SIZE_MAX", "4")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="rep-1")


@pytest.fixture()
def workspace_id(db_session: Session) -> uuid.UUID:
    workspace = CRMWorkspace(name="Engagements")
    db_session.add(workspace)
    db_session.commit()
    return workspace.id


@pytest.fixture()
def contact_id(db_session: Session, actor: ActorUser, workspace_id: uuid.UUID) -> uuid.UUID:
    return ContactService().create_contact(db_session, actor, workspace_id, ContactCreate(first_name="Ada")).contact.id


def test_isoformat_z_renders_millisecond_utc() -> None:
    aware = datetime(2024, 5, 6, 9, 30, 15, 123456, tzinfo=timezone(timedelta(hours=2)))
    assert isoformat_z(aware) == "2024-05-06T07:30:15.123Z"
    assert isoformat_z(datetime(2024, 5, 6, 9, 30)) == "2024-05-06T09:30:00.000Z"


def test_to_json_value_converts_nested_payloads() -> None:
    identifier = uuid.UUID("12345678-1234-5678-1234-567812345678")
    converted = to_json_value({"ids": [identifier], "at": datetime(2024, 1, 1, tzinfo=timezone.utc)})
    assert converted == {"ids": ["12345678-1234-5678-1234-567812345678"], "at": "2024-01-01T00:00:00.000Z"}


def test_emit_activity_rejects_unknown_type(db_session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> None:
    with pytest.raises(InvalidInputError):
        emit_activity(
            db_session,
            workspace_id=workspace_id,
            contact_id=contact_id,
            type="contact_deleted",
            subtype="contact",
            actor_user_id="rep-1",
        )
    with pytest.raises(InvalidInputError):
        emit_activity(
            db_session,
            workspace_id=workspace_id,
            contact_id=contact_id,
            type="note_added",
            subtype="sms",
            actor_user_id="rep-1",
        )
    db_session.rollback()


def test_log_engagements_append_one_activity_each(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> None:
    service = EngagementService()
    due_at = datetime(2024, 7, 1, 17, 0, tzinfo=timezone.utc)

    task = service.log_task(db_session, actor, workspace_id, contact_id, TaskLog(title=" Follow up ", due_at=due_at))
    note = service.log_note(db_session, actor, workspace_id, contact_id, NoteLog(body="Met at conf", mentions=["rep-2"]))
    email = service.log_email(
        db_session,
        actor,
        workspace_id,
        contact_id,
        EmailLog(message_id="msg-1", subject="Hello", to=["ada@example.com"], provider="smtp"),
    )
    call = service.log_call(db_session, actor, workspace_id, contact_id, CallLog(direction="inbound", duration_seconds=95))

    assert (task.type, task.subtype) == ("task_created", "task")
    assert task.payload == {"title": "Follow up", "dueAt": "2024-07-01T17:00:00.000Z"}
    assert (note.type, note.subtype) == ("note_added", "note")
    assert note.payload == {"body": "Met at conf", "mentions": ["rep-2"]}
    assert (email.type, email.subtype) == ("email_sent", "email")
    assert email.payload == {
        "subject": "Hello",
        "to": ["ada@example.com"],
        "cc": [],
        "direction": "outbound",
        "messageId": "msg-1",
        "provider": "smtp",
    }
    assert (call.type, call.subtype) == ("call_logged", "call")
    assert call.payload == {"direction": "inbound", "durationSeconds": 95}

    opened = service.log_email_opened(db_session, actor, workspace_id, contact_id, "msg-1")
    assert (opened.type, opened.payload) == ("email_opened", {"messageId": "msg-1"})


def test_meeting_occurs_at_its_start(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> None:
    service = EngagementService()
    start_at = datetime(2024, 2, 1, 15, 0, tzinfo=timezone.utc)

    meeting = service.log_meeting(
        db_session,
        actor,
        workspace_id,
        contact_id,
        MeetingLog(start_at=start_at, end_at=start_at + timedelta(hours=1), location="HQ"),
    )
    assert meeting.type == "meeting_held"
    assert meeting.payload["startAt"] == "2024-02-01T15:00:00.000Z"
    assert meeting.payload["endAt"] == "2024-02-01T16:00:00.000Z"
    assert isoformat_z(meeting.occurred_at) == "2024-02-01T15:00:00.000Z"

    with pytest.raises(InvalidInputError):
        service.log_meeting(
            db_session,
            actor,
            workspace_id,
            contact_id,
            MeetingLog(start_at=start_at, end_at=start_at - timedelta(minutes=5)),
        )


def test_complete_task_once(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> None:
    service = EngagementService()
    task = service.log_task(db_session, actor, workspace_id, contact_id, TaskLog(title="Send contract"))

    completed = service.complete_task(db_session, actor, workspace_id, contact_id, task.id)
    assert completed.type == "task_completed"
    assert completed.payload["taskActivityId"] == str(task.id)
    assert completed.payload["title"] == "Send contract"
    assert completed.payload["completedAt"].endswith("Z")

    with pytest.raises(AlreadyArchivedError):
        service.complete_task(db_session, actor, workspace_id, contact_id, task.id)
    with pytest.raises(NotFoundError):
        service.complete_task(db_session, actor, workspace_id, contact_id, uuid.uuid4())
    with pytest.raises(NotFoundError):
        service.complete_task(db_session, actor, workspace_id, contact_id, completed.id)


def test_engagements_require_active_contact(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> None:
    ContactService().archive_contact(db_session, actor, workspace_id, contact_id)

    with pytest.raises(ContactArchivedError):
        EngagementService().log_note(db_session, actor, workspace_id, contact_id, NoteLog(body="Too late"))
    with pytest.raises(InvalidInputError):
        EngagementService().log_note(db_session, ActorUser(user_id=""), workspace_id, contact_id, NoteLog(body="x"))


def test_engagement_ticket_link_must_exist(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> None:
    missing = uuid.uuid4()

    with pytest.raises(NotFoundError) as exc_info:
        EngagementService().log_call(db_session, actor, workspace_id, contact_id, CallLog(ticket_id=missing))

    assert exc_info.value.details == {"ticketId": str(missing)}
    assert [item.type for item in ActivityService().get_timeline(db_session, workspace_id, contact_id)] == ["contact_created"]


def test_timeline_is_chronological_by_occurred_at(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> None:
    service = EngagementService()
    service.log_note(
        db_session,
        actor,
        workspace_id,
        contact_id,
        NoteLog(body="later", occurred_at=datetime(2024, 3, 2, tzinfo=timezone.utc)),
    )
    service.log_note(
        db_session,
        actor,
        workspace_id,
        contact_id,
        NoteLog(body="earlier", occurred_at=datetime(2024, 3, 1, tzinfo=timezone.utc)),
    )

    timeline = ActivityService().get_timeline(db_session, workspace_id, contact_id)
    assert [item.payload.get("body", item.type) for item in timeline] == ["earlier", "later", "contact_created"]


def test_list_activities_pages_newest_first(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> None:
    service = EngagementService()
    for day in range(1, 6):
        service.log_note(
            db_session,
            actor,
            workspace_id,
            contact_id,
            NoteLog(body=f"note-{day}", occurred_at=datetime(2024, 4, day, tzinfo=timezone.utc)),
        )
    activities = ActivityService()

    first = activities.list_activities(db_session, workspace_id, contact_id)
    assert [item.payload.get("body", item.type) for item in first.items] == ["contact_created", "note-5", "note-4"]
    assert first.next_cursor == first.items[-1].id

    second = activities.list_activities(db_session, workspace_id, contact_id, limit=50, cursor=first.next_cursor)
    assert [item.payload["body"] for item in second.items] == ["note-3", "note-2", "note-1"]
    assert second.next_cursor is None

    with pytest.raises(InvalidInputError):
        activities.list_activities(db_session, workspace_id, contact_id, cursor=uuid.uuid4())
