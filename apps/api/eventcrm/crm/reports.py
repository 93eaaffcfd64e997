"""Read-only reports projected from the Activity ledger, live deal/ticket rows and association history.

Reports never write. Windows are measured back from ``ReportService.clock()`` and Activities are
placed in a window by ``occurred_at``.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, NamedTuple

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from eventcrm.crm.associations import active_rows, latest_rows_by
from eventcrm.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMContactCompanyAssociation,
    CRMDeal,
    CRMDealContactAssociation,
    CRMTicket,
    CRMTicketContactAssociation,
    CRMWorkspace,
    utcnow,
)
from eventcrm.crm.schemas import (
    AssociationChurnRow,
    AssociationCoverageReportRead,
    BucketCount,
    CompanyActivityMixReportRead,
    CompanyActivityMixRow,
    CompanyActivityVolumeReportRead,
    CompanyActivityVolumeRow,
    CompanyContactCoverageReportRead,
    CompanyContactCoverageRow,
    CompanyGrowthReportRead,
    CompanyGrowthRow,
    CompanyLastActivityReportRead,
    CompanyLastActivityRow,
    ContactActivityReportRead,
    ContactLastActivity,
    DealAgeRow,
    DealCloseRow,
    DealStageStatusCount,
    DealValueDay,
    DealVelocityReportRead,
    MemberCoverage,
    StageTransitionRow,
    StatusCount,
    SubtypeCount,
    TicketSLAReportRead,
    TicketSLARow,
    TicketSLASummary,
    TypeCount,
    WindowCount,
)
from eventcrm.errors import NotFoundError


logger = logging.getLogger("eventcrm.crm.reports")

REPORT_WINDOWS = (7, 30, 90)
MIX_WINDOW_DAYS = 30
DEAL_VALUE_WINDOW_DAYS = 90
ENGAGEMENT_SUBTYPES = frozenset({"email", "call", "meeting", "task", "note"})
TICKET_AGING_BUCKETS = (("0-1d", 1), ("1-3d", 3), ("3-7d", 7))
CONTACT_COUNT_BUCKETS = ("1", "2", "3", "4+")


class _ActivityPoint(NamedTuple):
    occurred_at: datetime
    created_at: datetime
    id: uuid.UUID
    type: str
    subtype: str


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _payload_uuid(payload: Any, key: str) -> uuid.UUID | None:
    if not isinstance(payload, dict):
        return None
    raw = payload.get(key)
    if raw is None:
        return None
    try:
        return uuid.UUID(str(raw))
    except ValueError:
        return None


def _ranked(counter: Counter[str]) -> list[tuple[str, int]]:
    return sorted(counter.items(), key=lambda item: (-item[1], item[0]))


def _average(values: list[float]) -> float | None:
    return sum(values) / len(values) if values else None


def _contact_count_bucket(count: int) -> str:
    if count <= 1:
        return "1"
    if count <= 3:
        return str(count)
    return "4+"


def _distribution(counts: Iterable[int]) -> list[BucketCount]:
    buckets = Counter(_contact_count_bucket(count) for count in counts)
    return [BucketCount(bucket=bucket, count=buckets[bucket]) for bucket in CONTACT_COUNT_BUCKETS if buckets[bucket]]


def _last_activity(latest: dict[uuid.UUID, datetime]) -> list[ContactLastActivity]:
    ordered = sorted(latest.items(), key=lambda item: item[1], reverse=True)
    return [ContactLastActivity(contact_id=contact_id, last_occurred_at=at) for contact_id, at in ordered]


def _keep_earliest(target: dict[uuid.UUID, datetime], key: uuid.UUID, value: datetime) -> None:
    current = target.get(key)
    if current is None or value < current:
        target[key] = value


def _keep_latest(target: dict[uuid.UUID, datetime], key: uuid.UUID, value: datetime) -> None:
    current = target.get(key)
    if current is None or value > current:
        target[key] = value


@dataclass(slots=True)
class ReportService:
    clock: Callable[[], datetime] = utcnow

    def contact_activity(self, session: Session, workspace_id: uuid.UUID) -> ContactActivityReportRead:
        self._require_workspace(session, workspace_id)
        now = _utc(self.clock())
        since = {days: now - timedelta(days=days) for days in REPORT_WINDOWS}

        by_type: Counter[str] = Counter()
        by_subtype: Counter[str] = Counter()
        volume: Counter[int] = Counter()
        last_in_window: dict[uuid.UUID, datetime] = {}
        last_all_time: dict[uuid.UUID, datetime] = {}
        rows = session.execute(
            select(CRMActivity.contact_id, CRMActivity.type, CRMActivity.subtype, CRMActivity.occurred_at).where(
                CRMActivity.workspace_id == workspace_id
            )
        ).all()
        for contact_id, activity_type, subtype, occurred_at in rows:
            occurred_at = _utc(occurred_at)
            _keep_latest(last_all_time, contact_id, occurred_at)
            for days in REPORT_WINDOWS:
                if occurred_at >= since[days]:
                    volume[days] += 1
            if occurred_at < since[MIX_WINDOW_DAYS]:
                continue
            by_type[activity_type] += 1
            if subtype in ENGAGEMENT_SUBTYPES:
                by_subtype[subtype] += 1
            _keep_latest(last_in_window, contact_id, occurred_at)

        growth: Counter[int] = Counter()
        for created_at in session.scalars(select(CRMContact.created_at).where(CRMContact.workspace_id == workspace_id)):
            created_at = _utc(created_at)
            for days in REPORT_WINDOWS:
                if created_at >= since[days]:
                    growth[days] += 1

        return ContactActivityReportRead(
            window_days=MIX_WINDOW_DAYS,
            mix_by_type=[TypeCount(type=key, count=count) for key, count in _ranked(by_type)],
            mix_by_subtype=[SubtypeCount(subtype=key, count=count) for key, count in _ranked(by_subtype)],
            volume=[WindowCount(window_days=days, count=volume[days]) for days in REPORT_WINDOWS],
            last_activity_by_contact_30d=_last_activity(last_in_window),
            last_activity_by_contact_all_time=_last_activity(last_all_time),
            contact_growth=[WindowCount(window_days=days, count=growth[days]) for days in REPORT_WINDOWS],
        )

    def deal_velocity(self, session: Session, workspace_id: uuid.UUID) -> DealVelocityReportRead:
        """Stage-to-stage durations from the ledger plus status rollups over live deals.

        A transition is two consecutive ``deal_created`` / ``deal_stage_changed`` Activities of the
        same deal; its duration is the gap between their ``occurred_at``. Close time runs from
        ``deal_created`` to the first ``deal_won`` or ``deal_lost``.
        """
        self._require_workspace(session, workspace_id)
        now = _utc(self.clock())

        stage_events: dict[uuid.UUID, list[tuple[datetime, datetime, uuid.UUID, uuid.UUID]]] = defaultdict(list)
        opened_at: dict[uuid.UUID, datetime] = {}
        closed: dict[uuid.UUID, tuple[datetime, str]] = {}
        events = session.execute(
            select(CRMActivity.type, CRMActivity.payload, CRMActivity.occurred_at, CRMActivity.created_at).where(
                and_(
                    CRMActivity.workspace_id == workspace_id,
                    CRMActivity.type.in_(("deal_created", "deal_stage_changed", "deal_won", "deal_lost")),
                )
            )
        ).all()
        for activity_type, payload, occurred_at, created_at in events:
            deal_id = _payload_uuid(payload, "dealId")
            if deal_id is None:
                continue
            occurred_at = _utc(occurred_at)
            if activity_type in ("deal_won", "deal_lost"):
                previous = closed.get(deal_id)
                if previous is None or occurred_at < previous[0]:
                    closed[deal_id] = (occurred_at, activity_type.removeprefix("deal_"))
                continue
            if activity_type == "deal_created":
                _keep_earliest(opened_at, deal_id, occurred_at)
            pipeline_id = _payload_uuid(payload, "pipelineId")
            stage_id = _payload_uuid(payload, "stageId")
            if pipeline_id is None or stage_id is None:
                continue
            stage_events[deal_id].append((occurred_at, _utc(created_at), pipeline_id, stage_id))

        durations: dict[tuple[uuid.UUID, uuid.UUID, uuid.UUID], list[float]] = defaultdict(list)
        for entries in stage_events.values():
            entries.sort(key=lambda entry: (entry[0], entry[1]))
            for current, following in zip(entries, entries[1:]):
                key = (current[2], current[3], following[3])
                durations[key].append((following[0] - current[0]).total_seconds())
        transitions = [
            StageTransitionRow(
                pipeline_id=pipeline_id,
                from_stage_id=from_stage_id,
                to_stage_id=to_stage_id,
                avg_duration_seconds=sum(values) / len(values),
                transition_count=len(values),
            )
            for (pipeline_id, from_stage_id, to_stage_id), values in durations.items()
        ]
        transitions.sort(key=lambda row: (-row.transition_count, row.avg_duration_seconds))

        close_seconds: dict[str, list[float]] = defaultdict(list)
        for deal_id, (closed_at, status) in closed.items():
            started = opened_at.get(deal_id)
            if started is None or closed_at < started:
                continue
            close_seconds[status].append((closed_at - started).total_seconds())

        deals = session.scalars(
            select(CRMDeal).where(and_(CRMDeal.workspace_id == workspace_id, CRMDeal.archived_at.is_(None)))
        ).all()
        by_stage: Counter[tuple[uuid.UUID, uuid.UUID, str]] = Counter()
        ages: dict[str, list[float]] = defaultdict(list)
        value_by_day: dict[date, list[Decimal]] = defaultdict(list)
        value_since = now - timedelta(days=DEAL_VALUE_WINDOW_DAYS)
        for deal in deals:
            created_at = _utc(deal.created_at)
            by_stage[(deal.pipeline_id, deal.stage_id, deal.status)] += 1
            ages[deal.status].append((now - created_at).total_seconds())
            if created_at >= value_since:
                value_by_day[created_at.date()].append(Decimal(deal.amount or 0))

        return DealVelocityReportRead(
            window_days=DEAL_VALUE_WINDOW_DAYS,
            transitions=transitions,
            win_rate_by_stage=[
                DealStageStatusCount(pipeline_id=pipeline_id, stage_id=stage_id, status=status, count=count)
                for (pipeline_id, stage_id, status), count in sorted(
                    by_stage.items(), key=lambda item: (str(item[0][0]), str(item[0][1]), item[0][2])
                )
            ],
            avg_deal_age=[
                DealAgeRow(status=status, avg_age_seconds=sum(values) / len(values), count=len(values))
                for status, values in sorted(ages.items())
            ],
            close_times=[
                DealCloseRow(status=status, avg_seconds_to_close=sum(values) / len(values), count=len(values))
                for status, values in sorted(close_seconds.items())
            ],
            deal_value_over_time=[
                DealValueDay(day=day, total_amount=sum(amounts, Decimal("0")), deal_count=len(amounts))
                for day, amounts in sorted(value_by_day.items())
            ],
        )

    def ticket_sla(self, session: Session, workspace_id: uuid.UUID) -> TicketSLAReportRead:
        """Time to first response and to resolution per ticket, measured from ``ticket_created``.

        A response is the earliest engagement Activity (email, call, meeting, task or note) linked to
        the ticket; resolution is the earliest ``ticket_closed``. Negative gaps are reported as null.
        """
        self._require_workspace(session, workspace_id)
        now = _utc(self.clock())

        created: dict[uuid.UUID, datetime] = {}
        first_response: dict[uuid.UUID, datetime] = {}
        resolved: dict[uuid.UUID, datetime] = {}
        rows = session.execute(
            select(CRMActivity.type, CRMActivity.subtype, CRMActivity.payload, CRMActivity.occurred_at).where(
                and_(
                    CRMActivity.workspace_id == workspace_id,
                    CRMActivity.payload["ticketId"].as_string().is_not(None),
                )
            )
        ).all()
        for activity_type, subtype, payload, occurred_at in rows:
            ticket_id = _payload_uuid(payload, "ticketId")
            if ticket_id is None:
                continue
            occurred_at = _utc(occurred_at)
            if activity_type == "ticket_created":
                _keep_earliest(created, ticket_id, occurred_at)
            elif activity_type == "ticket_closed":
                _keep_earliest(resolved, ticket_id, occurred_at)
            if subtype in ENGAGEMENT_SUBTYPES:
                _keep_earliest(first_response, ticket_id, occurred_at)

        sla: list[TicketSLARow] = []
        for ticket_id, created_at in sorted(created.items(), key=lambda item: item[1], reverse=True):
            responded_at = first_response.get(ticket_id)
            resolved_at = resolved.get(ticket_id)
            sla.append(
                TicketSLARow(
                    ticket_id=ticket_id,
                    ticket_created_at=created_at,
                    first_response_at=responded_at,
                    resolved_at=resolved_at,
                    time_to_first_response_seconds=self._elapsed(created_at, responded_at),
                    time_to_resolution_seconds=self._elapsed(created_at, resolved_at),
                )
            )
        response_times = [row.time_to_first_response_seconds for row in sla if row.time_to_first_response_seconds is not None]
        resolution_times = [row.time_to_resolution_seconds for row in sla if row.time_to_resolution_seconds is not None]

        tickets = session.scalars(
            select(CRMTicket).where(and_(CRMTicket.workspace_id == workspace_id, CRMTicket.archived_at.is_(None)))
        ).all()
        by_status = Counter(ticket.status for ticket in tickets)
        aging: Counter[str] = Counter()
        for ticket in tickets:
            if ticket.status != "open":
                continue
            age_days = (now - _utc(ticket.created_at)).total_seconds() / 86400
            bucket = next((label for label, limit in TICKET_AGING_BUCKETS if age_days < limit), "7+d")
            aging[bucket] += 1
        bucket_order = [label for label, _ in TICKET_AGING_BUCKETS] + ["7+d"]

        return TicketSLAReportRead(
            sla=sla,
            open_closed=[StatusCount(status=status, count=count) for status, count in _ranked(by_status)],
            aging_buckets=[BucketCount(bucket=label, count=aging[label]) for label in bucket_order if aging[label]],
            summary=TicketSLASummary(
                ticket_count=len(sla),
                tickets_with_first_response=len(response_times),
                avg_time_to_first_response_seconds=_average(response_times),
                tickets_resolved=len(resolution_times),
                avg_time_to_resolution_seconds=_average(resolution_times),
            ),
        )

    def association_coverage(self, session: Session, workspace_id: uuid.UUID) -> AssociationCoverageReportRead:
        self._require_workspace(session, workspace_id)
        now = _utc(self.clock())

        live_deals = set(
            session.scalars(
                select(CRMDeal.id).where(and_(CRMDeal.workspace_id == workspace_id, CRMDeal.archived_at.is_(None)))
            )
        )
        live_tickets = set(
            session.scalars(
                select(CRMTicket.id).where(and_(CRMTicket.workspace_id == workspace_id, CRMTicket.archived_at.is_(None)))
            )
        )
        deal_members = self._member_rollup(
            active_rows(
                latest_rows_by(
                    session,
                    CRMDealContactAssociation,
                    group_by=("deal_id", "contact_id"),
                    workspace_id=workspace_id,
                )
            ),
            owner="deal_id",
            lead_flag="is_primary",
        )
        ticket_members = self._member_rollup(
            active_rows(
                latest_rows_by(
                    session,
                    CRMTicketContactAssociation,
                    group_by=("ticket_id", "contact_id"),
                    workspace_id=workspace_id,
                )
            ),
            owner="ticket_id",
            lead_flag="is_requester",
        )

        churn: Counter[tuple[date, str, str | None]] = Counter()
        since = now - timedelta(days=MIX_WINDOW_DAYS)
        events = session.execute(
            select(CRMActivity.type, CRMActivity.payload, CRMActivity.occurred_at).where(
                and_(
                    CRMActivity.workspace_id == workspace_id,
                    CRMActivity.type.in_(("association_added", "association_removed")),
                )
            )
        ).all()
        for activity_type, payload, occurred_at in events:
            occurred_at = _utc(occurred_at)
            if occurred_at < since:
                continue
            kind = payload.get("kind") if isinstance(payload, dict) else None
            churn[(occurred_at.date(), activity_type, kind)] += 1

        return AssociationCoverageReportRead(
            deal_coverage=self._coverage(deal_members, live_deals),
            ticket_coverage=self._coverage(ticket_members, live_tickets),
            churn_window_days=MIX_WINDOW_DAYS,
            churn=[
                AssociationChurnRow(day=day, type=activity_type, kind=kind, count=count)
                for (day, activity_type, kind), count in sorted(
                    churn.items(), key=lambda item: (item[0][0], item[0][1], item[0][2] or "")
                )
            ],
            deal_contacts_distribution=_distribution(count for count, _ in deal_members.values()),
            ticket_contacts_distribution=_distribution(count for count, _ in ticket_members.values()),
        )

    def company_activity_volume(self, session: Session, workspace_id: uuid.UUID) -> CompanyActivityVolumeReportRead:
        self._require_workspace(session, workspace_id)
        now = _utc(self.clock())
        since = {days: now - timedelta(days=days) for days in REPORT_WINDOWS}
        companies, members = self._company_members(session, workspace_id)
        activities = self._activities_by_contact(session, workspace_id)

        rows: list[CompanyActivityVolumeRow] = []
        for company in companies:
            counts: Counter[int] = Counter()
            for association in members.get(company.id, []):
                for point in activities.get(association.contact_id, []):
                    for days in REPORT_WINDOWS:
                        if point.occurred_at >= since[days]:
                            counts[days] += 1
            rows.append(
                CompanyActivityVolumeRow(
                    company_id=company.id,
                    company_name=company.name,
                    count_7d=counts[7],
                    count_30d=counts[30],
                    count_90d=counts[90],
                )
            )
        rows.sort(key=lambda row: (-row.count_30d, row.company_name, str(row.company_id)))
        return CompanyActivityVolumeReportRead(windows=list(REPORT_WINDOWS), rows=rows)

    def company_last_activity(self, session: Session, workspace_id: uuid.UUID) -> CompanyLastActivityReportRead:
        self._require_workspace(session, workspace_id)
        companies, members = self._company_members(session, workspace_id)
        activities = self._activities_by_contact(session, workspace_id)

        rows: list[CompanyLastActivityRow] = []
        for company in companies:
            points = [
                point
                for association in members.get(company.id, [])
                for point in activities.get(association.contact_id, [])
            ]
            latest = max(points, key=lambda point: (point.occurred_at, point.created_at, str(point.id)), default=None)
            rows.append(
                CompanyLastActivityRow(
                    company_id=company.id,
                    company_name=company.name,
                    last_occurred_at=latest.occurred_at if latest else None,
                    last_type=latest.type if latest else None,
                    last_subtype=latest.subtype if latest else None,
                )
            )
        return CompanyLastActivityReportRead(rows=rows)

    def company_activity_mix(self, session: Session, workspace_id: uuid.UUID) -> CompanyActivityMixReportRead:
        self._require_workspace(session, workspace_id)
        since = _utc(self.clock()) - timedelta(days=MIX_WINDOW_DAYS)
        companies, members = self._company_members(session, workspace_id)
        activities = self._activities_by_contact(session, workspace_id)

        rows: list[CompanyActivityMixRow] = []
        for company in companies:
            mix: Counter[str] = Counter()
            for association in members.get(company.id, []):
                for point in activities.get(association.contact_id, []):
                    if point.occurred_at >= since:
                        mix[point.subtype] += 1
            rows.extend(
                CompanyActivityMixRow(company_id=company.id, company_name=company.name, subtype=subtype, count=count)
                for subtype, count in _ranked(mix)
            )
        return CompanyActivityMixReportRead(window_days=MIX_WINDOW_DAYS, rows=rows)

    def company_contact_coverage(self, session: Session, workspace_id: uuid.UUID) -> CompanyContactCoverageReportRead:
        self._require_workspace(session, workspace_id)
        since = _utc(self.clock()) - timedelta(days=MIX_WINDOW_DAYS)
        companies, members = self._company_members(session, workspace_id)
        activities = self._activities_by_contact(session, workspace_id)

        rows: list[CompanyContactCoverageRow] = []
        for company in companies:
            associations = members.get(company.id, [])
            recent_total = 0
            engaged = 0
            for association in associations:
                recent = sum(1 for point in activities.get(association.contact_id, []) if point.occurred_at >= since)
                recent_total += recent
                engaged += 1 if recent else 0
            active = len(associations)
            rows.append(
                CompanyContactCoverageRow(
                    company_id=company.id,
                    company_name=company.name,
                    active_contacts=active,
                    primary_contacts=sum(1 for association in associations if association.is_primary),
                    active_contacts_with_activity_30d=engaged,
                    avg_activities_per_active_contact_30d=recent_total / active if active else 0.0,
                )
            )
        rows.sort(key=lambda row: (-row.active_contacts, row.company_name, str(row.company_id)))
        return CompanyContactCoverageReportRead(window_days=MIX_WINDOW_DAYS, rows=rows)

    def company_growth(self, session: Session, workspace_id: uuid.UUID) -> CompanyGrowthReportRead:
        """Contact-company associations added and removed per window, from association Activities.

        Role or primary changes are ``association_added`` Activities with another ``event`` and are
        not counted as growth.
        """
        self._require_workspace(session, workspace_id)
        now = _utc(self.clock())
        since = {days: now - timedelta(days=days) for days in REPORT_WINDOWS}
        companies, _ = self._company_members(session, workspace_id)

        added: dict[uuid.UUID, Counter[int]] = defaultdict(Counter)
        removed: dict[uuid.UUID, Counter[int]] = defaultdict(Counter)
        events = session.execute(
            select(CRMActivity.type, CRMActivity.payload, CRMActivity.occurred_at).where(
                and_(
                    CRMActivity.workspace_id == workspace_id,
                    CRMActivity.type.in_(("association_added", "association_removed")),
                )
            )
        ).all()
        for activity_type, payload, occurred_at in events:
            if not isinstance(payload, dict) or payload.get("kind") != "contact_company":
                continue
            company_id = _payload_uuid(payload, "companyId")
            if company_id is None:
                continue
            if activity_type == "association_added" and payload.get("event") != "association_added":
                continue
            target = added if activity_type == "association_added" else removed
            occurred_at = _utc(occurred_at)
            for days in REPORT_WINDOWS:
                if occurred_at >= since[days]:
                    target[company_id][days] += 1

        rows: list[CompanyGrowthRow] = []
        for company in companies:
            plus = added.get(company.id, Counter())
            minus = removed.get(company.id, Counter())
            rows.append(
                CompanyGrowthRow(
                    company_id=company.id,
                    company_name=company.name,
                    added_7d=plus[7],
                    removed_7d=minus[7],
                    net_7d=plus[7] - minus[7],
                    added_30d=plus[30],
                    removed_30d=minus[30],
                    net_30d=plus[30] - minus[30],
                    added_90d=plus[90],
                    removed_90d=minus[90],
                    net_90d=plus[90] - minus[90],
                )
            )
        rows.sort(key=lambda row: (-row.net_30d, row.company_name, str(row.company_id)))
        return CompanyGrowthReportRead(windows=list(REPORT_WINDOWS), rows=rows)

    def _require_workspace(self, session: Session, workspace_id: uuid.UUID) -> None:
        if session.get(CRMWorkspace, workspace_id) is None:
            raise NotFoundError("Workspace not found", details={"workspaceId": str(workspace_id)})
        logger.debug("crm.report_requested", extra={"workspace_id": str(workspace_id)})

    @staticmethod
    def _elapsed(start: datetime, end: datetime | None) -> float | None:
        if end is None or end < start:
            return None
        return (end - start).total_seconds()

    @staticmethod
    def _member_rollup(rows: list[Any], *, owner: str, lead_flag: str) -> dict[uuid.UUID, tuple[int, bool]]:
        rollup: dict[uuid.UUID, tuple[int, bool]] = {}
        for row in rows:
            count, has_lead = rollup.get(getattr(row, owner), (0, False))
            rollup[getattr(row, owner)] = (count + 1, has_lead or bool(getattr(row, lead_flag)))
        return rollup

    @staticmethod
    def _coverage(rollup: dict[uuid.UUID, tuple[int, bool]], live_ids: set[uuid.UUID]) -> MemberCoverage:
        live = [value for owner_id, value in rollup.items() if owner_id in live_ids]
        return MemberCoverage(
            total=len(live_ids),
            with_lead_contact=sum(1 for _, has_lead in live if has_lead),
            avg_contacts=_average([float(count) for count, _ in live]),
        )

    @staticmethod
    def _company_members(
        session: Session,
        workspace_id: uuid.UUID,
    ) -> tuple[list[CRMCompany], dict[uuid.UUID, list[CRMContactCompanyAssociation]]]:
        companies = list(
            session.scalars(
                select(CRMCompany)
                .where(and_(CRMCompany.workspace_id == workspace_id, CRMCompany.archived_at.is_(None)))
                .order_by(CRMCompany.name.asc(), CRMCompany.id.asc())
            ).all()
        )
        members: dict[uuid.UUID, list[CRMContactCompanyAssociation]] = defaultdict(list)
        current = latest_rows_by(
            session,
            CRMContactCompanyAssociation,
            group_by=("company_id", "contact_id"),
            workspace_id=workspace_id,
        )
        for association in active_rows(current):
            members[association.company_id].append(association)
        return companies, members

    @staticmethod
    def _activities_by_contact(session: Session, workspace_id: uuid.UUID) -> dict[uuid.UUID, list[_ActivityPoint]]:
        grouped: dict[uuid.UUID, list[_ActivityPoint]] = defaultdict(list)
        rows = session.execute(
            select(
                CRMActivity.contact_id,
                CRMActivity.occurred_at,
                CRMActivity.created_at,
                CRMActivity.id,
                CRMActivity.type,
                CRMActivity.subtype,
            ).where(CRMActivity.workspace_id == workspace_id)
        ).all()
        for contact_id, occurred_at, created_at, activity_id, activity_type, subtype in rows:
            grouped[contact_id].append(
                _ActivityPoint(_utc(occurred_at), _utc(created_at), activity_id, activity_type, subtype)
            )
        return grouped
