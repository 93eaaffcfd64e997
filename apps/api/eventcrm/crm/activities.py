from __future__ import annotations

import logging
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from eventcrm.errors import InvalidInputError
from eventcrm.metrics import observe_activity_emitted
from eventcrm.crm.models import CRMActivity, ledger_now


logger = logging.getLogger("eventcrm.crm.activities")

ACTIVITY_TYPES: tuple[str, ...] = (
    "contact_created",
    "contact_updated",
    "contact_archived",
    "contact_merged",
    "contact_property_set",
    "contact_property_cleared",
    "company_created",
    "company_updated",
    "company_archived",
    "association_added",
    "association_removed",
    "deal_created",
    "deal_stage_changed",
    "deal_won",
    "deal_lost",
    "deal_archived",
    "ticket_created",
    "ticket_stage_changed",
    "ticket_closed",
    "ticket_reopened",
    "ticket_archived",
    "task_created",
    "task_completed",
    "note_added",
    "email_sent",
    "email_opened",
    "call_logged",
    "meeting_held",
    "automation_task_created",
    "automation_internal_notification_sent",
    "automation_property_updated",
    "automation_company_associated",
    "automation_execution_succeeded",
    "automation_execution_failed",
    "automation_execution_skipped",
)

ACTIVITY_SUBTYPES = frozenset({"contact", "task", "note", "email", "call", "meeting", "system"})

# Activity types the automation engine polls for. Workflows may name any activity type.
TRIGGER_TYPES: frozenset[str] = frozenset(
    {
        "contact_created",
        "deal_stage_changed",
        "ticket_closed",
        "task_completed",
        "email_opened",
    }
)


def isoformat_z(value: datetime) -> str:
    """Render ``value`` as ``YYYY-MM-DDTHH:MM:SS.mmmZ``; naive datetimes are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def to_json_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): to_json_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(item) for item in value]
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, datetime):
        return isoformat_z(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def emit_activity(
    session: Session,
    *,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    type: str,
    subtype: str,
    actor_user_id: str,
    payload: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> CRMActivity:
    """Append one Activity row and flush it.

    The flush happens here so the row is written, and its ``created_at`` taken, before anything
    the caller adds afterwards in the same transaction.
    """
    if type not in ACTIVITY_TYPES:
        raise InvalidInputError(f"Unknown activity type: {type}")
    if subtype not in ACTIVITY_SUBTYPES:
        raise InvalidInputError(f"Unknown activity subtype: {subtype}")

    created_at = ledger_now()
    activity = CRMActivity(
        workspace_id=workspace_id,
        contact_id=contact_id,
        type=type,
        subtype=subtype,
        actor_user_id=actor_user_id,
        payload=to_json_value(payload or {}),
        occurred_at=occurred_at or created_at,
        created_at=created_at,
    )
    session.add(activity)
    session.flush()
    observe_activity_emitted(type)
    logger.debug(
        "activity.emitted",
        extra={
            "workspace_id": str(workspace_id),
            "contact_id": str(contact_id),
            "activity_id": str(activity.id),
            "activity_type": type,
        },
    )
    return activity


def get_timeline(session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> list[CRMActivity]:
    stmt = (
        select(CRMActivity)
        .where(and_(CRMActivity.workspace_id == workspace_id, CRMActivity.contact_id == contact_id))
        .order_by(CRMActivity.occurred_at.asc(), CRMActivity.created_at.asc(), CRMActivity.id.asc())
    )
    return list(session.scalars(stmt).all())


def list_activity_page(
    session: Session,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    *,
    limit: int,
    cursor: uuid.UUID | None = None,
) -> tuple[list[CRMActivity], uuid.UUID | None]:
    """Return one page newest first and the cursor for the next page.

    The cursor is the id of the last row of the previous page. ``next_cursor`` is only set when
    the page came back full.
    """
    stmt = select(CRMActivity).where(
        and_(CRMActivity.workspace_id == workspace_id, CRMActivity.contact_id == contact_id)
    )
    if cursor is not None:
        anchor = session.scalar(
            select(CRMActivity).where(
                and_(
                    CRMActivity.id == cursor,
                    CRMActivity.workspace_id == workspace_id,
                    CRMActivity.contact_id == contact_id,
                )
            )
        )
        if anchor is None:
            raise InvalidInputError("Invalid cursor", details={"cursor": str(cursor)})
        stmt = stmt.where(
            or_(
                CRMActivity.occurred_at < anchor.occurred_at,
                and_(CRMActivity.occurred_at == anchor.occurred_at, CRMActivity.created_at < anchor.created_at),
                and_(
                    CRMActivity.occurred_at == anchor.occurred_at,
                    CRMActivity.created_at == anchor.created_at,
                    CRMActivity.id < anchor.id,
                ),
            )
        )

    stmt = stmt.order_by(
        CRMActivity.occurred_at.desc(),
        CRMActivity.created_at.desc(),
        CRMActivity.id.desc(),
    ).limit(limit)
    rows = list(session.scalars(stmt).all())
    next_cursor = rows[-1].id if len(rows) == limit else None
    return rows, next_cursor
