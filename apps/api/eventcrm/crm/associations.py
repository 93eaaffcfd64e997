"""Latest-wins reads and appends over the association history tables.

Every association table is an immutable ledger: the current state for a key is the newest row
for it (by ``created_at`` then ``id``), and a row with ``archived_at`` set means "not associated".
Removal and updates never touch old rows, they append a new one.
"""

from __future__ import annotations

import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from eventcrm.crm.models import (
    CRMContactCompanyAssociation,
    CRMDealContactAssociation,
    CRMTicketContactAssociation,
    ledger_now,
)


AssociationRow = TypeVar(
    "AssociationRow",
    CRMContactCompanyAssociation,
    CRMDealContactAssociation,
    CRMTicketContactAssociation,
)


def latest_row(session: Session, model: type[AssociationRow], **key: Any) -> AssociationRow | None:
    """Newest row for the exact key, e.g. ``latest_row(s, CRMDealContactAssociation, deal_id=d, contact_id=c)``."""
    conditions = [getattr(model, column) == value for column, value in key.items()]
    stmt = select(model).where(and_(*conditions)).order_by(model.created_at.desc(), model.id.desc()).limit(1)
    return session.scalar(stmt)


def latest_rows(
    session: Session,
    model: type[AssociationRow],
    *,
    group_by: str,
    **key: Any,
) -> list[AssociationRow]:
    """Newest row per distinct ``group_by`` value among rows matching ``key``, oldest group first."""
    return latest_rows_by(session, model, group_by=(group_by,), **key)


def latest_rows_by(
    session: Session,
    model: type[AssociationRow],
    *,
    group_by: Sequence[str],
    **key: Any,
) -> list[AssociationRow]:
    """Newest row per distinct combination of the ``group_by`` columns among rows matching ``key``."""
    conditions = [getattr(model, column) == value for column, value in key.items()]
    stmt = select(model).where(and_(*conditions)).order_by(model.created_at.desc(), model.id.desc())
    latest: dict[tuple[Any, ...], AssociationRow] = {}
    for row in session.scalars(stmt):
        latest.setdefault(tuple(getattr(row, column) for column in group_by), row)
    return sorted(latest.values(), key=lambda row: row.created_at)


def active_rows(rows: Sequence[AssociationRow]) -> list[AssociationRow]:
    return [row for row in rows if row.archived_at is None]


def append_row(session: Session, model: type[AssociationRow], *, archived: bool = False, **values: Any) -> AssociationRow:
    created_at = ledger_now()
    row = model(created_at=created_at, archived_at=created_at if archived else None, **values)
    session.add(row)
    session.flush()
    return row


@dataclass(frozen=True)
class MemberState:
    """Projection of a deal or ticket's contacts: the active ones plus the flagged lead contact."""

    active: list[Any]
    lead_contact_id: uuid.UUID | None

    @property
    def active_contact_ids(self) -> list[uuid.UUID]:
        return [row.contact_id for row in self.active]

    def is_active(self, contact_id: uuid.UUID) -> bool:
        return any(row.contact_id == contact_id for row in self.active)


def deal_contact_state(session: Session, workspace_id: uuid.UUID, deal_id: uuid.UUID) -> MemberState:
    rows = active_rows(
        latest_rows(
            session,
            CRMDealContactAssociation,
            group_by="contact_id",
            workspace_id=workspace_id,
            deal_id=deal_id,
        )
    )
    primary = next((row.contact_id for row in rows if row.is_primary), None)
    return MemberState(active=rows, lead_contact_id=primary)


def ticket_contact_state(session: Session, workspace_id: uuid.UUID, ticket_id: uuid.UUID) -> MemberState:
    rows = active_rows(
        latest_rows(
            session,
            CRMTicketContactAssociation,
            group_by="contact_id",
            workspace_id=workspace_id,
            ticket_id=ticket_id,
        )
    )
    requester = next((row.contact_id for row in rows if row.is_requester), None)
    return MemberState(active=rows, lead_contact_id=requester)


def active_company_associations_for_contact(
    session: Session,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
) -> list[CRMContactCompanyAssociation]:
    return active_rows(
        latest_rows(
            session,
            CRMContactCompanyAssociation,
            group_by="company_id",
            workspace_id=workspace_id,
            contact_id=contact_id,
        )
    )


def active_contact_associations_for_company(
    session: Session,
    workspace_id: uuid.UUID,
    company_id: uuid.UUID,
) -> list[CRMContactCompanyAssociation]:
    return active_rows(
        latest_rows(
            session,
            CRMContactCompanyAssociation,
            group_by="contact_id",
            workspace_id=workspace_id,
            company_id=company_id,
        )
    )
