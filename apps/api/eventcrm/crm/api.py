from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from eventcrm.context import get_correlation_id
from eventcrm.core.database import get_db
from eventcrm.errors import CRMError, InvalidInputError
from eventcrm.crm.reports import ReportService
from eventcrm.crm.schemas import (
    ActivityPage,
    ActivityRead,
    AssociationCoverageReportRead,
    AssociationMutationResult,
    CallLog,
    CompanyArchiveRequest,
    CompanyAssociationCreate,
    CompanyAssociationRead,
    CompanyAssociationUpdate,
    CompanyActivityMixReportRead,
    CompanyActivityVolumeReportRead,
    CompanyCreate,
    CompanyGrowthReportRead,
    CompanyLastActivityReportRead,
    CompanyMutationResult,
    CompanyRead,
    CompanyUpdate,
    CompanyContactCoverageReportRead,
    ContactActivityReportRead,
    ContactCreate,
    ContactMergeRequest,
    ContactMergeResult,
    ContactMutationResult,
    ContactPropertiesRead,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealMutationResult,
    DealRead,
    DealVelocityReportRead,
    EmailLog,
    MeetingLog,
    MemberContactRequest,
    NoteLog,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PropertyDefinitionCreate,
    PropertyDefinitionRead,
    PropertyMutationResult,
    PropertyValueSet,
    StageChangeRequest,
    TaskLog,
    TicketCreate,
    TicketMutationResult,
    TicketPipelineRead,
    TicketSLAReportRead,
    TicketRead,
    TicketStageCreate,
    TicketStageRead,
    WorkflowCreate,
    WorkflowExecutionRead,
    WorkflowRead,
    WorkspaceCreate,
    WorkspaceRead,
)
from eventcrm.crm.service import (
    ActivityService,
    ActorUser,
    CompanyAssociationService,
    CompanyService,
    ContactPropertyService,
    ContactService,
    DealService,
    EngagementService,
    PipelineService,
    PropertyDefinitionService,
    TicketService,
    WorkflowService,
    WorkspaceService,
)

_WORKSPACE_PREFIX = "/api/crm/workspaces/{workspace_id}"

workspaces_router = APIRouter(prefix="/api/crm/workspaces", tags=["crm.workspaces"])
contacts_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.contacts"])
properties_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.properties"])
companies_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.companies"])
pipelines_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.pipelines"])
deals_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.deals"])
tickets_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.tickets"])
engagements_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.engagements"])
workflows_router = APIRouter(prefix=_WORKSPACE_PREFIX, tags=["crm.workflows"])
reports_router = APIRouter(prefix=_WORKSPACE_PREFIX + "/reports", tags=["crm.reports"])

workspace_service = WorkspaceService()
contact_service = ContactService()
definition_service = PropertyDefinitionService()
property_service = ContactPropertyService()
company_service = CompanyService()
association_service = CompanyAssociationService()
pipeline_service = PipelineService()
deal_service = DealService()
ticket_service = TicketService()
engagement_service = EngagementService()
workflow_service = WorkflowService()
activity_service = ActivityService()
report_service = ReportService()


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


async def crm_error_handler(request: Request, exc: CRMError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=exc.details,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(CRMError, crm_error_handler)  # type: ignore[arg-type]


def get_current_actor(
    request: Request,
    x_actor_user_id: str | None = Header(default=None),
) -> ActorUser:
    user_id = (x_actor_user_id or "").strip()
    if not user_id:
        raise InvalidInputError("x-actor-user-id header is required")
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(user_id=user_id, correlation_id=correlation_id)


@workspaces_router.post("", response_model=WorkspaceRead, status_code=status.HTTP_201_CREATED)
def create_workspace(
    dto: WorkspaceCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> WorkspaceRead:
    return workspace_service.create_workspace(db, user, dto)


@workspaces_router.get("/{workspace_id}", response_model=WorkspaceRead)
def get_workspace(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> WorkspaceRead:
    return workspace_service.get_workspace(db, workspace_id)


@contacts_router.post("/contacts", response_model=ContactMutationResult, status_code=status.HTTP_201_CREATED)
def create_contact(
    workspace_id: uuid.UUID,
    dto: ContactCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactMutationResult:
    return contact_service.create_contact(db, user, workspace_id, dto)


@contacts_router.get("/contacts", response_model=list[ContactRead])
def list_contacts(
    workspace_id: uuid.UUID,
    include_archived: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[ContactRead]:
    return contact_service.list_contacts(db, workspace_id, include_archived=include_archived, limit=limit)


@contacts_router.get("/contacts/{contact_id}", response_model=ContactRead)
def get_contact(workspace_id: uuid.UUID, contact_id: uuid.UUID, db: Session = Depends(get_db)) -> ContactRead:
    return contact_service.get_contact(db, workspace_id, contact_id)


@contacts_router.patch("/contacts/{contact_id}", response_model=ContactMutationResult)
def update_contact(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: ContactUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactMutationResult:
    return contact_service.update_contact(db, user, workspace_id, contact_id, dto)


@contacts_router.post("/contacts/{contact_id}/archive", response_model=ContactMutationResult)
def archive_contact(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactMutationResult:
    return contact_service.archive_contact(db, user, workspace_id, contact_id)


@contacts_router.post("/contacts/{contact_id}/merge", response_model=ContactMergeResult)
def merge_contacts(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: ContactMergeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ContactMergeResult:
    return contact_service.merge_contacts(db, user, workspace_id, contact_id, dto.secondary_contact_id)


@contacts_router.get("/contacts/{contact_id}/timeline", response_model=list[ActivityRead])
def get_timeline(workspace_id: uuid.UUID, contact_id: uuid.UUID, db: Session = Depends(get_db)) -> list[ActivityRead]:
    return activity_service.get_timeline(db, workspace_id, contact_id)


@contacts_router.get("/contacts/{contact_id}/activities", response_model=ActivityPage)
def list_activities(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    limit: int | None = Query(default=None),
    cursor: uuid.UUID | None = Query(default=None),
    db: Session = Depends(get_db),
) -> ActivityPage:
    return activity_service.list_activities(db, workspace_id, contact_id, limit=limit, cursor=cursor)


@properties_router.post(
    "/contact-properties",
    response_model=PropertyDefinitionRead,
    status_code=status.HTTP_201_CREATED,
)
def create_property_definition(
    workspace_id: uuid.UUID,
    dto: PropertyDefinitionCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> PropertyDefinitionRead:
    return definition_service.create_definition(db, user, workspace_id, dto)


@properties_router.get("/contact-properties", response_model=list[PropertyDefinitionRead])
def list_property_definitions(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> list[PropertyDefinitionRead]:
    return definition_service.list_definitions(db, workspace_id)


@properties_router.get("/contacts/{contact_id}/properties", response_model=ContactPropertiesRead)
def get_contact_properties(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> ContactPropertiesRead:
    return property_service.get_properties(db, workspace_id, contact_id)


@properties_router.put("/contacts/{contact_id}/properties/{key}", response_model=PropertyMutationResult)
def set_contact_property(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    key: str,
    dto: PropertyValueSet,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> PropertyMutationResult:
    return property_service.set_property(db, user, workspace_id, contact_id, key, dto.value)


@properties_router.delete("/contacts/{contact_id}/properties/{key}", response_model=PropertyMutationResult)
def clear_contact_property(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    key: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> PropertyMutationResult:
    return property_service.clear_property(db, user, workspace_id, contact_id, key)


@companies_router.post("/companies", response_model=CompanyMutationResult, status_code=status.HTTP_201_CREATED)
def create_company(
    workspace_id: uuid.UUID,
    dto: CompanyCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> CompanyMutationResult:
    return company_service.create_company(db, user, workspace_id, dto)


@companies_router.get("/companies", response_model=list[CompanyRead])
def list_companies(
    workspace_id: uuid.UUID,
    include_archived: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[CompanyRead]:
    return company_service.list_companies(db, workspace_id, include_archived=include_archived, limit=limit)


@companies_router.get("/companies/{company_id}", response_model=CompanyRead)
def get_company(workspace_id: uuid.UUID, company_id: uuid.UUID, db: Session = Depends(get_db)) -> CompanyRead:
    return company_service.get_company(db, workspace_id, company_id)


@companies_router.patch("/companies/{company_id}", response_model=CompanyMutationResult)
def update_company(
    workspace_id: uuid.UUID,
    company_id: uuid.UUID,
    dto: CompanyUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> CompanyMutationResult:
    return company_service.update_company(db, user, workspace_id, company_id, dto)


@companies_router.post("/companies/{company_id}/archive", response_model=CompanyMutationResult)
def archive_company(
    workspace_id: uuid.UUID,
    company_id: uuid.UUID,
    dto: CompanyArchiveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> CompanyMutationResult:
    return company_service.archive_company(db, user, workspace_id, company_id, dto.contact_id)


@companies_router.get("/companies/{company_id}/contacts", response_model=list[CompanyAssociationRead])
def list_company_contacts(
    workspace_id: uuid.UUID,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> list[CompanyAssociationRead]:
    return association_service.list_contacts_for_company(db, workspace_id, company_id)


@companies_router.get("/contacts/{contact_id}/companies", response_model=list[CompanyAssociationRead])
def list_contact_companies(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> list[CompanyAssociationRead]:
    return association_service.list_companies_for_contact(db, workspace_id, contact_id)


@companies_router.post(
    "/contacts/{contact_id}/companies",
    response_model=AssociationMutationResult,
    status_code=status.HTTP_201_CREATED,
)
def associate_company(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: CompanyAssociationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> AssociationMutationResult:
    return association_service.associate(db, user, workspace_id, contact_id, dto)


@companies_router.patch("/contacts/{contact_id}/companies/{company_id}", response_model=AssociationMutationResult)
def update_company_association(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    company_id: uuid.UUID,
    dto: CompanyAssociationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> AssociationMutationResult:
    return association_service.update_association(db, user, workspace_id, contact_id, company_id, dto)


@companies_router.delete("/contacts/{contact_id}/companies/{company_id}", response_model=AssociationMutationResult)
def disassociate_company(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> AssociationMutationResult:
    return association_service.disassociate(db, user, workspace_id, contact_id, company_id)


@pipelines_router.post("/pipelines", response_model=PipelineRead, status_code=status.HTTP_201_CREATED)
def create_pipeline(
    workspace_id: uuid.UUID,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> PipelineRead:
    return pipeline_service.create_pipeline(db, user, workspace_id, dto)


@pipelines_router.get("/pipelines", response_model=list[PipelineRead])
def list_pipelines(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> list[PipelineRead]:
    return pipeline_service.list_pipelines(db, workspace_id)


@pipelines_router.post(
    "/pipelines/{pipeline_id}/stages",
    response_model=PipelineStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_pipeline_stage(
    workspace_id: uuid.UUID,
    pipeline_id: uuid.UUID,
    dto: PipelineStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> PipelineStageRead:
    return pipeline_service.add_stage(db, user, workspace_id, pipeline_id, dto)


@pipelines_router.post("/ticket-pipelines", response_model=TicketPipelineRead, status_code=status.HTTP_201_CREATED)
def create_ticket_pipeline(
    workspace_id: uuid.UUID,
    dto: PipelineCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> TicketPipelineRead:
    return pipeline_service.create_ticket_pipeline(db, user, workspace_id, dto)


@pipelines_router.get("/ticket-pipelines", response_model=list[TicketPipelineRead])
def list_ticket_pipelines(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> list[TicketPipelineRead]:
    return pipeline_service.list_ticket_pipelines(db, workspace_id)


@pipelines_router.post(
    "/ticket-pipelines/{pipeline_id}/stages",
    response_model=TicketStageRead,
    status_code=status.HTTP_201_CREATED,
)
def add_ticket_stage(
    workspace_id: uuid.UUID,
    pipeline_id: uuid.UUID,
    dto: TicketStageCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> TicketStageRead:
    return pipeline_service.add_ticket_stage(db, user, workspace_id, pipeline_id, dto)


@deals_router.post("/deals", response_model=DealMutationResult, status_code=status.HTTP_201_CREATED)
def create_deal(
    workspace_id: uuid.UUID,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> DealMutationResult:
    return deal_service.create_deal(db, user, workspace_id, dto)


@deals_router.get("/deals", response_model=list[DealRead])
def list_deals(
    workspace_id: uuid.UUID,
    include_archived: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[DealRead]:
    return deal_service.list_deals(db, workspace_id, include_archived=include_archived, limit=limit)


@deals_router.get("/deals/{deal_id}", response_model=DealRead)
def get_deal(workspace_id: uuid.UUID, deal_id: uuid.UUID, db: Session = Depends(get_db)) -> DealRead:
    return deal_service.get_deal(db, workspace_id, deal_id)


@deals_router.post("/deals/{deal_id}/stage", response_model=DealMutationResult)
def change_deal_stage(
    workspace_id: uuid.UUID,
    deal_id: uuid.UUID,
    dto: StageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> DealMutationResult:
    return deal_service.change_stage(db, user, workspace_id, deal_id, dto.stage_id)


@deals_router.post("/deals/{deal_id}/archive", response_model=DealMutationResult)
def archive_deal(
    workspace_id: uuid.UUID,
    deal_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> DealMutationResult:
    return deal_service.archive_deal(db, user, workspace_id, deal_id)


@deals_router.post("/deals/{deal_id}/contacts", response_model=DealMutationResult, status_code=status.HTTP_201_CREATED)
def associate_deal_contact(
    workspace_id: uuid.UUID,
    deal_id: uuid.UUID,
    dto: MemberContactRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> DealMutationResult:
    return deal_service.associate_contact(db, user, workspace_id, deal_id, dto.contact_id)


@deals_router.delete("/deals/{deal_id}/contacts/{contact_id}", response_model=DealMutationResult)
def disassociate_deal_contact(
    workspace_id: uuid.UUID,
    deal_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> DealMutationResult:
    return deal_service.disassociate_contact(db, user, workspace_id, deal_id, contact_id)


@tickets_router.post("/tickets", response_model=TicketMutationResult, status_code=status.HTTP_201_CREATED)
def create_ticket(
    workspace_id: uuid.UUID,
    dto: TicketCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> TicketMutationResult:
    return ticket_service.create_ticket(db, user, workspace_id, dto)


@tickets_router.get("/tickets", response_model=list[TicketRead])
def list_tickets(
    workspace_id: uuid.UUID,
    include_archived: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[TicketRead]:
    return ticket_service.list_tickets(db, workspace_id, include_archived=include_archived, limit=limit)


@tickets_router.get("/tickets/{ticket_id}", response_model=TicketRead)
def get_ticket(workspace_id: uuid.UUID, ticket_id: uuid.UUID, db: Session = Depends(get_db)) -> TicketRead:
    return ticket_service.get_ticket(db, workspace_id, ticket_id)


@tickets_router.get("/contacts/{contact_id}/tickets", response_model=list[TicketRead])
def list_contact_tickets(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> list[TicketRead]:
    return ticket_service.list_tickets_for_contact(db, workspace_id, contact_id)


@tickets_router.post("/tickets/{ticket_id}/stage", response_model=TicketMutationResult)
def change_ticket_stage(
    workspace_id: uuid.UUID,
    ticket_id: uuid.UUID,
    dto: StageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> TicketMutationResult:
    return ticket_service.change_stage(db, user, workspace_id, ticket_id, dto.stage_id)


@tickets_router.post("/tickets/{ticket_id}/archive", response_model=TicketMutationResult)
def archive_ticket(
    workspace_id: uuid.UUID,
    ticket_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> TicketMutationResult:
    return ticket_service.archive_ticket(db, user, workspace_id, ticket_id)


@tickets_router.post(
    "/tickets/{ticket_id}/contacts",
    response_model=TicketMutationResult,
    status_code=status.HTTP_201_CREATED,
)
def associate_ticket_contact(
    workspace_id: uuid.UUID,
    ticket_id: uuid.UUID,
    dto: MemberContactRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> TicketMutationResult:
    return ticket_service.associate_contact(db, user, workspace_id, ticket_id, dto.contact_id)


@tickets_router.delete("/tickets/{ticket_id}/contacts/{contact_id}", response_model=TicketMutationResult)
def disassociate_ticket_contact(
    workspace_id: uuid.UUID,
    ticket_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> TicketMutationResult:
    return ticket_service.disassociate_contact(db, user, workspace_id, ticket_id, contact_id)


@engagements_router.post("/contacts/{contact_id}/tasks", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def log_task(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: TaskLog,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ActivityRead:
    return engagement_service.log_task(db, user, workspace_id, contact_id, dto)


@engagements_router.post("/contacts/{contact_id}/tasks/{task_activity_id}/complete", response_model=ActivityRead)
def complete_task(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    task_activity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ActivityRead:
    return engagement_service.complete_task(db, user, workspace_id, contact_id, task_activity_id)


@engagements_router.post("/contacts/{contact_id}/notes", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def log_note(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: NoteLog,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ActivityRead:
    return engagement_service.log_note(db, user, workspace_id, contact_id, dto)


@engagements_router.post("/contacts/{contact_id}/emails", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def log_email(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: EmailLog,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ActivityRead:
    return engagement_service.log_email(db, user, workspace_id, contact_id, dto)


@engagements_router.post(
    "/contacts/{contact_id}/emails/{message_id}/opened",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def log_email_opened(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    message_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ActivityRead:
    return engagement_service.log_email_opened(db, user, workspace_id, contact_id, message_id)


@engagements_router.post("/contacts/{contact_id}/calls", response_model=ActivityRead, status_code=status.HTTP_201_CREATED)
def log_call(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: CallLog,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ActivityRead:
    return engagement_service.log_call(db, user, workspace_id, contact_id, dto)


@engagements_router.post(
    "/contacts/{contact_id}/meetings",
    response_model=ActivityRead,
    status_code=status.HTTP_201_CREATED,
)
def log_meeting(
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    dto: MeetingLog,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> ActivityRead:
    return engagement_service.log_meeting(db, user, workspace_id, contact_id, dto)


@workflows_router.post("/workflows", response_model=WorkflowRead, status_code=status.HTTP_201_CREATED)
def create_workflow(
    workspace_id: uuid.UUID,
    dto: WorkflowCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> WorkflowRead:
    return workflow_service.create_workflow(db, user, workspace_id, dto)


@workflows_router.get("/workflows", response_model=list[WorkflowRead])
def list_workflows(
    workspace_id: uuid.UUID,
    include_archived: bool = Query(default=False),
    db: Session = Depends(get_db),
) -> list[WorkflowRead]:
    return workflow_service.list_workflows(db, workspace_id, include_archived=include_archived)


@workflows_router.post("/workflows/{workflow_id}/enable", response_model=WorkflowRead)
def enable_workflow(
    workspace_id: uuid.UUID,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> WorkflowRead:
    return workflow_service.enable_workflow(db, user, workspace_id, workflow_id)


@workflows_router.post("/workflows/{workflow_id}/disable", response_model=WorkflowRead)
def disable_workflow(
    workspace_id: uuid.UUID,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> WorkflowRead:
    return workflow_service.disable_workflow(db, user, workspace_id, workflow_id)


@workflows_router.post("/workflows/{workflow_id}/archive", response_model=WorkflowRead)
def archive_workflow(
    workspace_id: uuid.UUID,
    workflow_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_actor),
) -> WorkflowRead:
    return workflow_service.archive_workflow(db, user, workspace_id, workflow_id)


@workflows_router.get("/workflows/{workflow_id}/executions", response_model=list[WorkflowExecutionRead])
def list_workflow_executions(
    workspace_id: uuid.UUID,
    workflow_id: uuid.UUID,
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[WorkflowExecutionRead]:
    return workflow_service.list_executions(db, workspace_id, workflow_id, limit=limit)


@reports_router.get("/contacts/activity", response_model=ContactActivityReportRead)
def contact_activity_report(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> ContactActivityReportRead:
    return report_service.contact_activity(db, workspace_id)


@reports_router.get("/deals/velocity", response_model=DealVelocityReportRead)
def deal_velocity_report(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> DealVelocityReportRead:
    return report_service.deal_velocity(db, workspace_id)


@reports_router.get("/tickets/sla", response_model=TicketSLAReportRead)
def ticket_sla_report(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> TicketSLAReportRead:
    return report_service.ticket_sla(db, workspace_id)


@reports_router.get("/associations/coverage", response_model=AssociationCoverageReportRead)
def association_coverage_report(
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> AssociationCoverageReportRead:
    return report_service.association_coverage(db, workspace_id)


@reports_router.get("/companies/activity-volume", response_model=CompanyActivityVolumeReportRead)
def company_activity_volume_report(
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> CompanyActivityVolumeReportRead:
    return report_service.company_activity_volume(db, workspace_id)


@reports_router.get("/companies/last-activity", response_model=CompanyLastActivityReportRead)
def company_last_activity_report(
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> CompanyLastActivityReportRead:
    return report_service.company_last_activity(db, workspace_id)


@reports_router.get("/companies/activity-mix", response_model=CompanyActivityMixReportRead)
def company_activity_mix_report(
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> CompanyActivityMixReportRead:
    return report_service.company_activity_mix(db, workspace_id)


@reports_router.get("/companies/contact-coverage", response_model=CompanyContactCoverageReportRead)
def company_contact_coverage_report(
    workspace_id: uuid.UUID,
    db: Session = Depends(get_db),
) -> CompanyContactCoverageReportRead:
    return report_service.company_contact_coverage(db, workspace_id)


@reports_router.get("/companies/growth", response_model=CompanyGrowthReportRead)
def company_growth_report(workspace_id: uuid.UUID, db: Session = Depends(get_db)) -> CompanyGrowthReportRead:
    return report_service.company_growth(db, workspace_id)
