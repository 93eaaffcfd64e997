from __future__ import annotations

import uuid
from collections.abc import Generator
from dataclasses import dataclass
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from eventcrm.core.database import Base
from eventcrm.crm.models import CRMActivity, CRMDealContactAssociation, CRMWorkspace
from eventcrm.crm.schemas import ContactCreate, DealCreate, PipelineCreate, PipelineStageCreate
from eventcrm.crm.service import ActorUser, ContactService, DealService, PipelineService
from eventcrm.errors import (
    AlreadyArchivedError,
    AlreadyAssociatedError,
    AssociationNotFoundError,
    CannotRemovePrimaryError,
    ContactArchivedError,
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


@dataclass
class SalesPipeline:
    pipeline_id: uuid.UUID
    open_stage_id: uuid.UUID
    won_stage_id: uuid.UUID
    lost_stage_id: uuid.UUID


@pytest.fixture()
def actor() -> ActorUser:
    return ActorUser(user_id="user-1")


@pytest.fixture()
def workspace_id(db_session: Session) -> uuid.UUID:
    workspace = CRMWorkspace(name="Deals")
    db_session.add(workspace)
    db_session.commit()
    return workspace.id


@pytest.fixture()
def pipeline(db_session: Session, actor: ActorUser, workspace_id: uuid.UUID) -> SalesPipeline:
    service = PipelineService()
    created = service.create_pipeline(db_session, actor, workspace_id, PipelineCreate(name="Sales"))
    open_stage = service.add_stage(db_session, actor, workspace_id, created.id, PipelineStageCreate(name="Qualified", order=1))
    won_stage = service.add_stage(
        db_session,
        actor,
        workspace_id,
        created.id,
        PipelineStageCreate(name="Won", order=90, is_closed_won=True),
    )
    lost_stage = service.add_stage(
        db_session,
        actor,
        workspace_id,
        created.id,
        PipelineStageCreate(name="Lost", order=91, is_closed_lost=True),
    )
    return SalesPipeline(created.id, open_stage.id, won_stage.id, lost_stage.id)


def _contact(session: Session, actor: ActorUser, workspace_id: uuid.UUID, name: str) -> uuid.UUID:
    return ContactService().create_contact(session, actor, workspace_id, ContactCreate(first_name=name)).contact.id


def _deal_create(pipeline: SalesPipeline, contact_id: uuid.UUID, stage_id: uuid.UUID | None = None) -> DealCreate:
    return DealCreate(
        name="Renewal",
        amount=Decimal("1200.00"),
        currency="USD",
        pipeline_id=pipeline.pipeline_id,
        stage_id=stage_id or pipeline.open_stage_id,
        primary_contact_id=contact_id,
    )


def _types_for(session: Session, contact_id: uuid.UUID) -> list[str]:
    return list(
        session.scalars(
            select(CRMActivity.type)
            .where(CRMActivity.contact_id == contact_id)
            .order_by(CRMActivity.created_at.asc())
        ).all()
    )


def test_list_pipelines_returns_stages_in_order(
    db_session: Session,
    workspace_id: uuid.UUID,
    pipeline: SalesPipeline,
) -> None:
    pipelines = PipelineService().list_pipelines(db_session, workspace_id)
    assert [item.id for item in pipelines] == [pipeline.pipeline_id]
    assert [stage.name for stage in pipelines[0].stages] == ["Qualified", "Won", "Lost"]


def test_create_deal_links_primary_contact(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    pipeline: SalesPipeline,
) -> None:
    contact_id = _contact(db_session, actor, workspace_id, "Buyer")

    result = DealService().create_deal(db_session, actor, workspace_id, _deal_create(pipeline, contact_id))

    assert result.deal.status == "open"
    assert result.deal.primary_contact_id == contact_id
    assert result.deal.contact_ids == [contact_id]
    assert [activity.type for activity in result.activities] == ["deal_created"]
    assert result.activities[0].payload == {
        "dealId": str(result.deal.id),
        "pipelineId": str(pipeline.pipeline_id),
        "stageId": str(pipeline.open_stage_id),
    }


def test_create_deal_in_closed_stage_emits_outcome(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    pipeline: SalesPipeline,
) -> None:
    contact_id = _contact(db_session, actor, workspace_id, "Buyer")

    result = DealService().create_deal(
        db_session,
        actor,
        workspace_id,
        _deal_create(pipeline, contact_id, pipeline.won_stage_id),
    )

    assert result.deal.status == "won"
    assert [activity.type for activity in result.activities] == ["deal_created", "deal_won"]


def test_create_deal_rejects_archived_contact_and_foreign_stage(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    pipeline: SalesPipeline,
) -> None:
    contact_id = _contact(db_session, actor, workspace_id, "Buyer")
    other = PipelineService().create_pipeline(db_session, actor, workspace_id, PipelineCreate(name="Partners"))
    other_stage = PipelineService().add_stage(db_session, actor, workspace_id, other.id, PipelineStageCreate(name="Intro"))
    service = DealService()

    with pytest.raises(NotFoundError):
        service.create_deal(db_session, actor, workspace_id, _deal_create(pipeline, contact_id, other_stage.id))

    ContactService().archive_contact(db_session, actor, workspace_id, contact_id)
    with pytest.raises(ContactArchivedError):
        service.create_deal(db_session, actor, workspace_id, _deal_create(pipeline, contact_id))
    assert service.list_deals(db_session, workspace_id) == []


def test_change_stage_updates_status_and_emits_on_primary(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    pipeline: SalesPipeline,
) -> None:
    contact_id = _contact(db_session, actor, workspace_id, "Buyer")
    service = DealService()
    deal = service.create_deal(db_session, actor, workspace_id, _deal_create(pipeline, contact_id)).deal

    lost = service.change_stage(db_session, actor, workspace_id, deal.id, pipeline.lost_stage_id)
    assert lost.deal.status == "lost"
    assert [activity.type for activity in lost.activities] == ["deal_stage_changed", "deal_lost"]

    reopened = service.change_stage(db_session, actor, workspace_id, deal.id, pipeline.open_stage_id)
    assert reopened.deal.status == "open"
    assert [activity.type for activity in reopened.activities] == ["deal_stage_changed"]
    assert reopened.activities[0].payload["stageId"] == str(pipeline.open_stage_id)

    assert _types_for(db_session, contact_id) == [
        "contact_created",
        "deal_created",
        "deal_stage_changed",
        "deal_lost",
        "deal_stage_changed",
    ]


def test_deal_contact_membership_is_append_only(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    pipeline: SalesPipeline,
) -> None:
    primary_id = _contact(db_session, actor, workspace_id, "Primary")
    member_id = _contact(db_session, actor, workspace_id, "Member")
    service = DealService()
    deal = service.create_deal(db_session, actor, workspace_id, _deal_create(pipeline, primary_id)).deal

    added = service.associate_contact(db_session, actor, workspace_id, deal.id, member_id)
    assert sorted(added.deal.contact_ids) == sorted([primary_id, member_id])
    assert [(activity.type, activity.contact_id) for activity in added.activities] == [
        ("association_added", primary_id),
        ("association_added", member_id),
    ]
    assert added.activities[0].payload["kind"] == "deal_contact"

    with pytest.raises(AlreadyAssociatedError):
        service.associate_contact(db_session, actor, workspace_id, deal.id, member_id)
    with pytest.raises(CannotRemovePrimaryError):
        service.disassociate_contact(db_session, actor, workspace_id, deal.id, primary_id)

    removed = service.disassociate_contact(db_session, actor, workspace_id, deal.id, member_id)
    assert removed.deal.contact_ids == [primary_id]
    assert [(activity.type, activity.contact_id) for activity in removed.activities] == [
        ("association_removed", primary_id),
        ("association_removed", member_id),
    ]

    with pytest.raises(AssociationNotFoundError):
        service.disassociate_contact(db_session, actor, workspace_id, deal.id, member_id)

    rows = db_session.scalars(
        select(CRMDealContactAssociation)
        .where(CRMDealContactAssociation.deal_id == deal.id)
        .order_by(CRMDealContactAssociation.created_at.asc())
    ).all()
    assert [(row.contact_id, row.is_primary, row.archived_at is not None) for row in rows] == [
        (primary_id, True, False),
        (member_id, False, False),
        (member_id, False, True),
    ]


def test_archived_deal_rejects_further_commands(
    db_session: Session,
    actor: ActorUser,
    workspace_id: uuid.UUID,
    pipeline: SalesPipeline,
) -> None:
    contact_id = _contact(db_session, actor, workspace_id, "Buyer")
    other_id = _contact(db_session, actor, workspace_id, "Other")
    service = DealService()
    deal = service.create_deal(db_session, actor, workspace_id, _deal_create(pipeline, contact_id)).deal

    archived = service.archive_deal(db_session, actor, workspace_id, deal.id)
    assert archived.deal.archived_at is not None
    assert [activity.type for activity in archived.activities] == ["deal_archived"]

    with pytest.raises(AlreadyArchivedError):
        service.archive_deal(db_session, actor, workspace_id, deal.id)
    with pytest.raises(AlreadyArchivedError):
        service.change_stage(db_session, actor, workspace_id, deal.id, pipeline.won_stage_id)
    with pytest.raises(AlreadyArchivedError):
        service.associate_contact(db_session, actor, workspace_id, deal.id, other_id)

    assert service.list_deals(db_session, workspace_id) == []
    assert [item.id for item in service.list_deals(db_session, workspace_id, include_archived=True)] == [deal.id]
    assert service.get_deal(db_session, workspace_id, deal.id).amount == Decimal("1200.00")
