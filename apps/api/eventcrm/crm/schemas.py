from __future__ import annotations

import math
from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter, ValidationError, model_validator

from eventcrm.errors import InvalidInputError, UnsupportedActionTypeError


PropertyType = Literal["string", "number", "boolean", "date", "enum"]
CompanyRole = Literal["primary", "employee", "contractor", "other"]
TicketPriority = Literal["low", "medium", "high", "urgent"]
TicketStatus = Literal["open", "closed"]
DealStatus = Literal["open", "won", "lost"]
ExecutionStatus = Literal["success", "failed", "skipped"]
Direction = Literal["inbound", "outbound"]


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    contact_id: UUID
    type: str
    subtype: str
    actor_user_id: str
    payload: dict[str, Any]
    occurred_at: datetime
    created_at: datetime


class ActivityPage(BaseModel):
    items: list[ActivityRead]
    next_cursor: UUID | None = None


class ContactCreate(BaseModel):
    email: EmailStr | None = None
    first_name: str | None = None
    last_name: str | None = None
    occurred_at: datetime | None = None


class ContactUpdate(BaseModel):
    email: EmailStr | None = None
    first_name: str | None = None
    last_name: str | None = None


class ContactMergeRequest(BaseModel):
    secondary_contact_id: UUID


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    email: str | None
    first_name: str | None
    last_name: str | None
    created_at: datetime
    archived_at: datetime | None


class ContactMutationResult(BaseModel):
    contact: ContactRead
    activities: list[ActivityRead]


class ContactMergeResult(BaseModel):
    primary: ContactRead
    secondary: ContactRead
    activities: list[ActivityRead]


class PropertyDefinitionCreate(BaseModel):
    key: str
    label: str
    type: PropertyType
    options: list[str] | dict[str, Any] | None = None
    required: bool = False


class PropertyDefinitionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    key: str
    label: str
    type: PropertyType
    options: list[str] | None
    required: bool
    created_at: datetime
    archived_at: datetime | None


class PropertyValueSet(BaseModel):
    value: Any


class PropertyMutationResult(BaseModel):
    contact_id: UUID
    property_key: str
    value: Any
    activity: ActivityRead


class ContactPropertiesRead(BaseModel):
    contact_id: UUID
    properties: dict[str, Any]


class CompanyCreate(BaseModel):
    contact_id: UUID
    name: str
    legal_name: str | None = None
    domain: str | None = None
    industry: str | None = None
    size_range: str | None = None
    website: str | None = None
    country: str | None = None
    region: str | None = None


class CompanyUpdate(BaseModel):
    contact_id: UUID
    name: str | None = None
    legal_name: str | None = None
    domain: str | None = None
    industry: str | None = None
    size_range: str | None = None
    website: str | None = None
    country: str | None = None
    region: str | None = None


class CompanyArchiveRequest(BaseModel):
    contact_id: UUID


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    legal_name: str | None
    domain: str | None
    industry: str | None
    size_range: str | None
    website: str | None
    country: str | None
    region: str | None
    created_at: datetime
    archived_at: datetime | None


class CompanyMutationResult(BaseModel):
    company: CompanyRead
    activities: list[ActivityRead]


class CompanyAssociationCreate(BaseModel):
    company_id: UUID
    role: CompanyRole = "other"
    is_primary: bool = False


class CompanyAssociationUpdate(BaseModel):
    role: CompanyRole | None = None
    is_primary: bool | None = None


class CompanyAssociationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    contact_id: UUID
    company_id: UUID
    role: CompanyRole
    is_primary: bool
    created_at: datetime
    archived_at: datetime | None


class AssociationMutationResult(BaseModel):
    association: CompanyAssociationRead
    activities: list[ActivityRead]


class PipelineCreate(BaseModel):
    name: str = Field(min_length=1)
    order: int = 0


class PipelineStageCreate(BaseModel):
    name: str = Field(min_length=1)
    order: int = 0
    is_closed_won: bool = False
    is_closed_lost: bool = False

    @model_validator(mode="after")
    def validate_closed_flags(self) -> "PipelineStageCreate":
        if self.is_closed_won and self.is_closed_lost:
            raise ValueError("stage cannot be both closed won and closed lost")
        return self


class PipelineStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    order: int
    is_closed_won: bool
    is_closed_lost: bool


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    order: int
    stages: list[PipelineStageRead] = Field(default_factory=list)


class TicketStageCreate(BaseModel):
    name: str = Field(min_length=1)
    order: int = 0
    is_closed: bool = False


class TicketStageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    pipeline_id: UUID
    name: str
    order: int
    is_closed: bool


class TicketPipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    order: int
    stages: list[TicketStageRead] = Field(default_factory=list)


class DealCreate(BaseModel):
    name: str
    amount: Decimal | None = None
    currency: str | None = None
    pipeline_id: UUID
    stage_id: UUID
    primary_contact_id: UUID
    occurred_at: datetime | None = None


class StageChangeRequest(BaseModel):
    stage_id: UUID


class MemberContactRequest(BaseModel):
    contact_id: UUID


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    amount: Decimal | None
    currency: str | None
    pipeline_id: UUID
    stage_id: UUID
    status: DealStatus
    created_at: datetime
    archived_at: datetime | None
    primary_contact_id: UUID | None = None
    contact_ids: list[UUID] = Field(default_factory=list)


class DealMutationResult(BaseModel):
    deal: DealRead
    activities: list[ActivityRead]


class TicketCreate(BaseModel):
    subject: str
    description: str | None = None
    priority: TicketPriority = "medium"
    status: TicketStatus = "open"
    requester_contact_id: UUID
    additional_contact_ids: list[UUID] = Field(default_factory=list)
    deal_id: UUID | None = None
    pipeline_id: UUID | None = None
    stage_id: UUID | None = None
    occurred_at: datetime | None = None


class TicketRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    subject: str
    description: str | None
    priority: TicketPriority
    status: TicketStatus
    pipeline_id: UUID
    stage_id: UUID
    deal_id: UUID | None
    created_at: datetime
    archived_at: datetime | None
    requester_contact_id: UUID | None = None
    contact_ids: list[UUID] = Field(default_factory=list)


class TicketMutationResult(BaseModel):
    ticket: TicketRead
    activities: list[ActivityRead]


class TaskLog(BaseModel):
    title: str = Field(min_length=1)
    due_at: datetime | None = None
    assignee_user_id: str | None = None
    completed_at: datetime | None = None
    ticket_id: UUID | None = None
    occurred_at: datetime | None = None


class NoteLog(BaseModel):
    body: str = Field(min_length=1)
    mentions: list[str] = Field(default_factory=list)
    ticket_id: UUID | None = None
    occurred_at: datetime | None = None


class EmailLog(BaseModel):
    message_id: str | None = None
    subject: str
    to: list[str] = Field(default_factory=list)
    cc: list[str] = Field(default_factory=list)
    direction: Direction = "outbound"
    provider: str | None = None
    ticket_id: UUID | None = None
    occurred_at: datetime | None = None


class CallLog(BaseModel):
    direction: Direction = "outbound"
    duration_seconds: int | None = Field(default=None, ge=0)
    outcome: str | None = None
    ticket_id: UUID | None = None
    occurred_at: datetime | None = None


class MeetingLog(BaseModel):
    start_at: datetime
    end_at: datetime | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    ticket_id: UUID | None = None
    occurred_at: datetime | None = None


class _StepBase(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class DelayStep(_StepBase):
    action_type: Literal["delay"]
    ms: float | None = None
    seconds: float | None = None

    def duration_ms(self) -> int:
        """Milliseconds to wait; ``ms`` wins over ``seconds``."""
        if self.ms is not None:
            raw = self.ms
        elif self.seconds is not None:
            raw = self.seconds * 1000
        else:
            raise ValueError("Delay step requires ms or seconds")
        if not math.isfinite(raw) or raw < 0:
            raise ValueError("Delay duration must be a non-negative number")
        return math.floor(raw)


class CreateTaskStep(_StepBase):
    action_type: Literal["create_task"]


class SendNotificationStep(_StepBase):
    action_type: Literal["send_internal_notification"]


class SetPropertyStep(_StepBase):
    action_type: Literal["set_contact_property"]
    property_key: str = Field(alias="propertyKey", min_length=1)
    value: Any = None


class AssociateCompanyStep(_StepBase):
    action_type: Literal["associate_company"]
    company_id: UUID = Field(alias="companyId")
    role: CompanyRole = "other"


WorkflowStep = Annotated[
    DelayStep | CreateTaskStep | SendNotificationStep | SetPropertyStep | AssociateCompanyStep,
    Field(discriminator="action_type"),
]

ACTION_TYPES = ("delay", "create_task", "send_internal_notification", "set_contact_property", "associate_company")

_workflow_step_adapter = TypeAdapter(WorkflowStep)


def parse_workflow_step(action_type: str, config: dict[str, Any] | None) -> WorkflowStep:
    if action_type not in ACTION_TYPES:
        raise UnsupportedActionTypeError(action_type)
    payload = {key: value for key, value in (config or {}).items() if key != "action_type"}
    payload["action_type"] = action_type
    try:
        return _workflow_step_adapter.validate_python(payload)
    except ValidationError as exc:
        messages = [f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()]
        raise InvalidInputError(f"Invalid {action_type} step config", details={"errors": messages}) from exc


class WorkflowStepCreate(BaseModel):
    order: int | None = None
    action_type: str
    config: dict[str, Any] = Field(default_factory=dict)


class WorkflowCreate(BaseModel):
    name: str
    trigger_types: list[str]
    steps: list[WorkflowStepCreate] = Field(default_factory=list)


class WorkflowStepRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order: int
    action_type: str
    config: dict[str, Any]


class WorkflowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workspace_id: UUID
    name: str
    trigger_types: list[str]
    enabled: bool
    created_at: datetime
    archived_at: datetime | None
    steps: list[WorkflowStepRead] = Field(default_factory=list)


class WorkflowExecutionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    workflow_id: UUID
    activity_id: UUID
    contact_id: UUID
    status: ExecutionStatus
    idempotency_key: str
    error: str | None
    executed_at: datetime


class WorkspaceCreate(BaseModel):
    name: str = Field(min_length=1)


class WorkspaceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    created_at: datetime


class TypeCount(BaseModel):
    type: str
    count: int


class SubtypeCount(BaseModel):
    subtype: str
    count: int


class StatusCount(BaseModel):
    status: str
    count: int


class BucketCount(BaseModel):
    bucket: str
    count: int


class WindowCount(BaseModel):
    window_days: int
    count: int


class ContactLastActivity(BaseModel):
    contact_id: UUID
    last_occurred_at: datetime


class ContactActivityReportRead(BaseModel):
    window_days: int
    mix_by_type: list[TypeCount]
    mix_by_subtype: list[SubtypeCount]
    volume: list[WindowCount]
    last_activity_by_contact_30d: list[ContactLastActivity]
    last_activity_by_contact_all_time: list[ContactLastActivity]
    contact_growth: list[WindowCount]


class StageTransitionRow(BaseModel):
    pipeline_id: UUID
    from_stage_id: UUID
    to_stage_id: UUID
    avg_duration_seconds: float
    transition_count: int


class DealStageStatusCount(BaseModel):
    pipeline_id: UUID
    stage_id: UUID
    status: DealStatus
    count: int


class DealAgeRow(BaseModel):
    status: DealStatus
    avg_age_seconds: float
    count: int


class DealCloseRow(BaseModel):
    status: Literal["won", "lost"]
    avg_seconds_to_close: float
    count: int


class DealValueDay(BaseModel):
    day: date
    total_amount: Decimal
    deal_count: int


class DealVelocityReportRead(BaseModel):
    window_days: int
    transitions: list[StageTransitionRow]
    win_rate_by_stage: list[DealStageStatusCount]
    avg_deal_age: list[DealAgeRow]
    close_times: list[DealCloseRow]
    deal_value_over_time: list[DealValueDay]


class TicketSLARow(BaseModel):
    ticket_id: UUID
    ticket_created_at: datetime
    first_response_at: datetime | None
    resolved_at: datetime | None
    time_to_first_response_seconds: float | None
    time_to_resolution_seconds: float | None


class TicketSLASummary(BaseModel):
    ticket_count: int
    tickets_with_first_response: int
    avg_time_to_first_response_seconds: float | None
    tickets_resolved: int
    avg_time_to_resolution_seconds: float | None


class TicketSLAReportRead(BaseModel):
    sla: list[TicketSLARow]
    open_closed: list[StatusCount]
    aging_buckets: list[BucketCount]
    summary: TicketSLASummary


class MemberCoverage(BaseModel):
    total: int
    with_lead_contact: int
    avg_contacts: float | None


class AssociationChurnRow(BaseModel):
    day: date
    type: str
    kind: str | None
    count: int


class AssociationCoverageReportRead(BaseModel):
    deal_coverage: MemberCoverage
    ticket_coverage: MemberCoverage
    churn_window_days: int
    churn: list[AssociationChurnRow]
    deal_contacts_distribution: list[BucketCount]
    ticket_contacts_distribution: list[BucketCount]


class CompanyActivityVolumeRow(BaseModel):
    company_id: UUID
    company_name: str
    count_7d: int
    count_30d: int
    count_90d: int


class CompanyLastActivityRow(BaseModel):
    company_id: UUID
    company_name: str
    last_occurred_at: datetime | None
    last_type: str | None
    last_subtype: str | None


class CompanyActivityMixRow(BaseModel):
    company_id: UUID
    company_name: str
    subtype: str
    count: int


class CompanyContactCoverageRow(BaseModel):
    company_id: UUID
    company_name: str
    active_contacts: int
    primary_contacts: int
    active_contacts_with_activity_30d: int
    avg_activities_per_active_contact_30d: float


class CompanyGrowthRow(BaseModel):
    company_id: UUID
    company_name: str
    added_7d: int
    removed_7d: int
    net_7d: int
    added_30d: int
    removed_30d: int
    net_30d: int
    added_90d: int
    removed_90d: int
    net_90d: int


class CompanyActivityVolumeReportRead(BaseModel):
    windows: list[int]
    rows: list[CompanyActivityVolumeRow]


class CompanyLastActivityReportRead(BaseModel):
    rows: list[CompanyLastActivityRow]


class CompanyActivityMixReportRead(BaseModel):
    window_days: int
    rows: list[CompanyActivityMixRow]


class CompanyContactCoverageReportRead(BaseModel):
    window_days: int
    rows: list[CompanyContactCoverageRow]


class CompanyGrowthReportRead(BaseModel):
    windows: list[int]
    rows: list[CompanyGrowthRow]
