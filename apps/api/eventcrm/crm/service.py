from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventcrm.core.config import get_settings
from eventcrm.errors import (
    AlreadyArchivedError,
    AlreadyAssociatedError,
    AlreadyExistsError,
    AssociationNotFoundError,
    CannotRemovePrimaryError,
    ContactArchivedError,
    InvalidInputError,
    MinimumContactsViolationError,
    NoActiveAssociationError,
    NotFoundError,
)
from eventcrm.platform import unit_of_work
from eventcrm.crm.activities import ACTIVITY_TYPES, emit_activity, get_timeline, isoformat_z, list_activity_page
from eventcrm.crm.associations import (
    MemberState,
    active_company_associations_for_contact,
    active_contact_associations_for_company,
    active_rows,
    append_row,
    deal_contact_state,
    latest_row,
    latest_rows,
    ticket_contact_state,
)
from eventcrm.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContact,
    CRMContactCompanyAssociation,
    CRMContactPropertyDefinition,
    CRMDeal,
    CRMDealContactAssociation,
    CRMPipeline,
    CRMPipelineStage,
    CRMTicket,
    CRMTicketContactAssociation,
    CRMTicketPipeline,
    CRMTicketStage,
    CRMWorkflow,
    CRMWorkflowExecution,
    CRMWorkflowStep,
    CRMWorkspace,
    ledger_now,
)
from eventcrm.crm.properties import (
    PROPERTY_KEY_RE,
    append_property_value,
    current_property_value,
    current_property_values,
    get_definition,
    normalize_options,
    validate_property_value,
)
from eventcrm.crm.schemas import (
    ActivityPage,
    ActivityRead,
    AssociationMutationResult,
    CallLog,
    CompanyAssociationCreate,
    CompanyAssociationRead,
    CompanyAssociationUpdate,
    CompanyCreate,
    CompanyMutationResult,
    CompanyRead,
    CompanyUpdate,
    ContactCreate,
    ContactMergeResult,
    ContactMutationResult,
    ContactPropertiesRead,
    ContactRead,
    ContactUpdate,
    DealCreate,
    DealMutationResult,
    DealRead,
    EmailLog,
    MeetingLog,
    NoteLog,
    PipelineCreate,
    PipelineRead,
    PipelineStageCreate,
    PipelineStageRead,
    PropertyDefinitionCreate,
    PropertyDefinitionRead,
    PropertyMutationResult,
    TaskLog,
    TicketCreate,
    TicketMutationResult,
    TicketPipelineRead,
    TicketRead,
    TicketStageCreate,
    TicketStageRead,
    WorkflowCreate,
    WorkflowExecutionRead,
    WorkflowRead,
    WorkflowStepRead,
    WorkspaceCreate,
    WorkspaceRead,
    parse_workflow_step,
)


logger = logging.getLogger("eventcrm.crm.service")

_CONTACT_PAYLOAD_KEYS = {"email": "email", "first_name": "firstName", "last_name": "lastName"}
_COMPANY_PAYLOAD_KEYS = {
    "name": "name",
    "legal_name": "legalName",
    "domain": "domain",
    "industry": "industry",
    "size_range": "sizeRange",
    "website": "website",
    "country": "country",
    "region": "region",
}
TICKET_SUBJECT_MAX_LENGTH = 200


@dataclass
class ActorUser:
    user_id: str
    correlation_id: str | None = None


def _require_actor(actor_user: ActorUser | None) -> str:
    user_id = (actor_user.user_id if actor_user is not None else "") or ""
    if not user_id.strip():
        raise InvalidInputError("actorUserId is required")
    return user_id.strip()


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _camel_patch(values: dict[str, Any], keys: dict[str, str]) -> dict[str, Any]:
    return {keys[name]: value for name, value in values.items() if name in keys}


def _activity_reads(activities: list[CRMActivity]) -> list[ActivityRead]:
    return [ActivityRead.model_validate(activity) for activity in activities]


def _require_workspace(session: Session, workspace_id: uuid.UUID) -> CRMWorkspace:
    workspace = session.get(CRMWorkspace, workspace_id)
    if workspace is None:
        raise NotFoundError("Workspace not found")
    return workspace


def _load_contact(session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> CRMContact:
    contact = session.scalar(
        select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.workspace_id == workspace_id))
    )
    if contact is None:
        raise NotFoundError("Contact not found", details={"contactId": str(contact_id)})
    return contact


def _load_active_contact(session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> CRMContact:
    contact = _load_contact(session, workspace_id, contact_id)
    if contact.archived_at is not None:
        raise ContactArchivedError("Contact is archived", details={"contactId": str(contact_id)})
    return contact


class WorkspaceService:
    def create_workspace(self, session: Session, actor_user: ActorUser, dto: WorkspaceCreate) -> WorkspaceRead:
        _require_actor(actor_user)
        name = dto.name.strip()
        if not name:
            raise InvalidInputError("name is required")
        with unit_of_work(session):
            workspace = CRMWorkspace(name=name)
            session.add(workspace)
            session.flush()
            result = WorkspaceRead.model_validate(workspace)
        logger.info("crm.workspace.created", extra={"workspace_id": str(result.id)})
        return result

    def get_workspace(self, session: Session, workspace_id: uuid.UUID) -> WorkspaceRead:
        return WorkspaceRead.model_validate(_require_workspace(session, workspace_id))


class ContactService:
    def create_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: ContactCreate,
    ) -> ContactMutationResult:
        actor_user_id = _require_actor(actor_user)
        submitted = dto.model_dump(exclude_unset=True, exclude={"occurred_at"})

        with unit_of_work(session):
            _require_workspace(session, workspace_id)
            contact = CRMContact(
                workspace_id=workspace_id,
                email=str(dto.email) if dto.email is not None else None,
                first_name=dto.first_name,
                last_name=dto.last_name,
                created_at=ledger_now(),
            )
            session.add(contact)
            session.flush()
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact.id,
                type="contact_created",
                subtype="contact",
                actor_user_id=actor_user_id,
                payload={"contact": _camel_patch(submitted, _CONTACT_PAYLOAD_KEYS)},
                occurred_at=_as_utc(dto.occurred_at),
            )
            result = ContactMutationResult(
                contact=ContactRead.model_validate(contact),
                activities=_activity_reads([activity]),
            )

        logger.info("crm.contact.created", extra={"workspace_id": str(workspace_id), "contact_id": str(result.contact.id)})
        return result

    def update_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactMutationResult:
        actor_user_id = _require_actor(actor_user)
        patch = dto.model_dump(exclude_unset=True)
        if not patch:
            raise InvalidInputError("No fields to update")

        with unit_of_work(session):
            contact = _load_active_contact(session, workspace_id, contact_id)
            for name, value in patch.items():
                setattr(contact, name, str(value) if name == "email" and value is not None else value)
            session.flush()
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact.id,
                type="contact_updated",
                subtype="contact",
                actor_user_id=actor_user_id,
                payload={"patch": _camel_patch(patch, _CONTACT_PAYLOAD_KEYS)},
            )
            result = ContactMutationResult(
                contact=ContactRead.model_validate(contact),
                activities=_activity_reads([activity]),
            )
        return result

    def archive_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> ContactMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            contact = _load_contact(session, workspace_id, contact_id)
            if contact.archived_at is not None:
                raise AlreadyArchivedError("Contact already archived", details={"contactId": str(contact_id)})
            archived_at = ledger_now()
            contact.archived_at = archived_at
            session.flush()
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact.id,
                type="contact_archived",
                subtype="contact",
                actor_user_id=actor_user_id,
                payload={"archivedAt": isoformat_z(archived_at)},
                occurred_at=archived_at,
            )
            result = ContactMutationResult(
                contact=ContactRead.model_validate(contact),
                activities=_activity_reads([activity]),
            )
        return result

    def merge_contacts(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        primary_contact_id: uuid.UUID,
        secondary_contact_id: uuid.UUID,
    ) -> ContactMergeResult:
        """Fold ``secondary`` into ``primary`` by archiving the secondary.

        Associations, property values and Activities stay on the secondary. Both timelines get a
        ``contact_merged`` entry pointing at the other contact.
        """
        actor_user_id = _require_actor(actor_user)
        if primary_contact_id == secondary_contact_id:
            raise InvalidInputError("Cannot merge a contact into itself")

        with unit_of_work(session):
            primary = _load_contact(session, workspace_id, primary_contact_id)
            secondary = _load_contact(session, workspace_id, secondary_contact_id)
            if primary.archived_at is not None:
                raise ContactArchivedError("Primary contact is archived", details={"contactId": str(primary.id)})
            if secondary.archived_at is not None:
                raise AlreadyArchivedError("Secondary contact already archived", details={"contactId": str(secondary.id)})

            archived_at = ledger_now()
            secondary.archived_at = archived_at
            session.flush()
            on_primary = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=primary.id,
                type="contact_merged",
                subtype="contact",
                actor_user_id=actor_user_id,
                payload={"mergedContactId": secondary.id},
                occurred_at=archived_at,
            )
            on_secondary = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=secondary.id,
                type="contact_merged",
                subtype="contact",
                actor_user_id=actor_user_id,
                payload={"primaryContactId": primary.id, "archivedAt": isoformat_z(archived_at)},
                occurred_at=archived_at,
            )
            result = ContactMergeResult(
                primary=ContactRead.model_validate(primary),
                secondary=ContactRead.model_validate(secondary),
                activities=_activity_reads([on_primary, on_secondary]),
            )

        logger.info(
            "crm.contact.merged",
            extra={"workspace_id": str(workspace_id), "contact_id": str(primary_contact_id)},
        )
        return result

    def get_contact(self, session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> ContactRead:
        return ContactRead.model_validate(_load_contact(session, workspace_id, contact_id))

    def list_contacts(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        *,
        include_archived: bool = False,
        limit: int = 100,
    ) -> list[ContactRead]:
        stmt = select(CRMContact).where(CRMContact.workspace_id == workspace_id)
        if not include_archived:
            stmt = stmt.where(CRMContact.archived_at.is_(None))
        stmt = stmt.order_by(CRMContact.created_at.desc(), CRMContact.id.desc()).limit(limit)
        return [ContactRead.model_validate(contact) for contact in session.scalars(stmt).all()]


class PropertyDefinitionService:
    def create_definition(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: PropertyDefinitionCreate,
    ) -> PropertyDefinitionRead:
        _require_actor(actor_user)
        key = dto.key.strip()
        if not PROPERTY_KEY_RE.match(key):
            raise InvalidInputError("Invalid key (expected snake_case)", details={"key": dto.key})
        label = dto.label.strip()
        if not label:
            raise InvalidInputError("label is required")
        options = normalize_options(dto.type, dto.options)

        try:
            with unit_of_work(session):
                _require_workspace(session, workspace_id)
                existing = session.scalar(
                    select(CRMContactPropertyDefinition).where(
                        and_(
                            CRMContactPropertyDefinition.workspace_id == workspace_id,
                            CRMContactPropertyDefinition.key == key,
                        )
                    )
                )
                if existing is not None:
                    raise AlreadyExistsError("Property definition already exists", details={"key": key})
                definition = CRMContactPropertyDefinition(
                    workspace_id=workspace_id,
                    key=key,
                    label=label,
                    type=dto.type,
                    options=options,
                    required=dto.required,
                    created_at=ledger_now(),
                )
                session.add(definition)
                session.flush()
                result = PropertyDefinitionRead.model_validate(definition)
        except IntegrityError as exc:
            raise AlreadyExistsError("Property definition already exists", details={"key": key}) from exc
        return result

    def list_definitions(self, session: Session, workspace_id: uuid.UUID) -> list[PropertyDefinitionRead]:
        stmt = (
            select(CRMContactPropertyDefinition)
            .where(
                and_(
                    CRMContactPropertyDefinition.workspace_id == workspace_id,
                    CRMContactPropertyDefinition.archived_at.is_(None),
                )
            )
            .order_by(CRMContactPropertyDefinition.key.asc())
        )
        return [PropertyDefinitionRead.model_validate(row) for row in session.scalars(stmt).all()]


class ContactPropertyService:
    def set_property(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        key: str,
        value: Any,
        occurred_at: datetime | None = None,
    ) -> PropertyMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            _load_active_contact(session, workspace_id, contact_id)
            definition = self._require_definition(session, workspace_id, key)
            normalized = validate_property_value(definition, value)
            _, old_value = current_property_value(session, workspace_id, contact_id, key)
            # Activity first, then the value row.
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact_id,
                type="contact_property_set",
                subtype="contact",
                actor_user_id=actor_user_id,
                payload={"propertyKey": key, "oldValue": old_value, "newValue": normalized},
                occurred_at=_as_utc(occurred_at),
            )
            append_property_value(session, workspace_id, contact_id, key, normalized)
            result = PropertyMutationResult(
                contact_id=contact_id,
                property_key=key,
                value=normalized,
                activity=ActivityRead.model_validate(activity),
            )
        return result

    def clear_property(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        key: str,
        occurred_at: datetime | None = None,
    ) -> PropertyMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            _load_active_contact(session, workspace_id, contact_id)
            self._require_definition(session, workspace_id, key)
            _, old_value = current_property_value(session, workspace_id, contact_id, key)
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact_id,
                type="contact_property_cleared",
                subtype="contact",
                actor_user_id=actor_user_id,
                payload={"propertyKey": key, "oldValue": old_value, "newValue": None},
                occurred_at=_as_utc(occurred_at),
            )
            append_property_value(session, workspace_id, contact_id, key, None)
            result = PropertyMutationResult(
                contact_id=contact_id,
                property_key=key,
                value=None,
                activity=ActivityRead.model_validate(activity),
            )
        return result

    def get_properties(self, session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> ContactPropertiesRead:
        _load_contact(session, workspace_id, contact_id)
        return ContactPropertiesRead(
            contact_id=contact_id,
            properties=current_property_values(session, workspace_id, contact_id),
        )

    def _require_definition(self, session: Session, workspace_id: uuid.UUID, key: str) -> CRMContactPropertyDefinition:
        definition = get_definition(session, workspace_id, key)
        if definition is None:
            raise NotFoundError("Property definition not found", details={"propertyKey": key})
        return definition


class CompanyService:
    """Company lifecycle. Companies own no timeline, every event lands on the caller's contact."""

    def create_company(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: CompanyCreate,
    ) -> CompanyMutationResult:
        actor_user_id = _require_actor(actor_user)
        name = dto.name.strip()
        if not name:
            raise InvalidInputError("name is required")

        with unit_of_work(session):
            _require_workspace(session, workspace_id)
            contact = _load_active_contact(session, workspace_id, dto.contact_id)
            fields = dto.model_dump(exclude={"contact_id", "name"})
            company = CRMCompany(workspace_id=workspace_id, name=name, created_at=ledger_now(), **fields)
            session.add(company)
            session.flush()
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact.id,
                type="company_created",
                subtype="system",
                actor_user_id=actor_user_id,
                payload={"companyId": company.id, "name": name},
            )
            result = CompanyMutationResult(
                company=CompanyRead.model_validate(company),
                activities=_activity_reads([activity]),
            )
        return result

    def update_company(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        company_id: uuid.UUID,
        dto: CompanyUpdate,
    ) -> CompanyMutationResult:
        actor_user_id = _require_actor(actor_user)
        patch = dto.model_dump(exclude_unset=True, exclude={"contact_id"})
        if not patch:
            raise InvalidInputError("No fields to update")
        if "name" in patch:
            if patch["name"] is None or not patch["name"].strip():
                raise InvalidInputError("name cannot be empty")
            patch["name"] = patch["name"].strip()

        with unit_of_work(session):
            company = self._load_company(session, workspace_id, company_id)
            if company.archived_at is not None:
                raise AlreadyArchivedError("Company is archived", details={"companyId": str(company_id)})
            contact = _load_active_contact(session, workspace_id, dto.contact_id)
            for name, value in patch.items():
                setattr(company, name, value)
            session.flush()
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact.id,
                type="company_updated",
                subtype="system",
                actor_user_id=actor_user_id,
                payload={"companyId": company.id, "patch": _camel_patch(patch, _COMPANY_PAYLOAD_KEYS)},
            )
            result = CompanyMutationResult(
                company=CompanyRead.model_validate(company),
                activities=_activity_reads([activity]),
            )
        return result

    def archive_company(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        company_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> CompanyMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            company = self._load_company(session, workspace_id, company_id)
            if company.archived_at is not None:
                raise AlreadyArchivedError("Company already archived", details={"companyId": str(company_id)})
            contact = _load_active_contact(session, workspace_id, contact_id)
            archived_at = ledger_now()
            company.archived_at = archived_at
            session.flush()
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact.id,
                type="company_archived",
                subtype="system",
                actor_user_id=actor_user_id,
                payload={"companyId": company.id, "archivedAt": isoformat_z(archived_at)},
                occurred_at=archived_at,
            )
            result = CompanyMutationResult(
                company=CompanyRead.model_validate(company),
                activities=_activity_reads([activity]),
            )
        return result

    def get_company(self, session: Session, workspace_id: uuid.UUID, company_id: uuid.UUID) -> CompanyRead:
        return CompanyRead.model_validate(self._load_company(session, workspace_id, company_id))

    def list_companies(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        *,
        include_archived: bool = False,
        limit: int = 100,
    ) -> list[CompanyRead]:
        stmt = select(CRMCompany).where(CRMCompany.workspace_id == workspace_id)
        if not include_archived:
            stmt = stmt.where(CRMCompany.archived_at.is_(None))
        stmt = stmt.order_by(CRMCompany.created_at.desc(), CRMCompany.id.desc()).limit(limit)
        return [CompanyRead.model_validate(company) for company in session.scalars(stmt).all()]

    def _load_company(self, session: Session, workspace_id: uuid.UUID, company_id: uuid.UUID) -> CRMCompany:
        company = session.scalar(
            select(CRMCompany).where(and_(CRMCompany.id == company_id, CRMCompany.workspace_id == workspace_id))
        )
        if company is None:
            raise NotFoundError("Company not found", details={"companyId": str(company_id)})
        return company


class CompanyAssociationService:
    def __init__(self) -> None:
        self.company_service = CompanyService()

    def associate(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: CompanyAssociationCreate,
    ) -> AssociationMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            self._load_pair(session, workspace_id, contact_id, dto.company_id)
            latest = latest_row(
                session,
                CRMContactCompanyAssociation,
                workspace_id=workspace_id,
                contact_id=contact_id,
                company_id=dto.company_id,
            )
            if latest is not None and latest.archived_at is None:
                raise AlreadyAssociatedError("Association already active", details={"companyId": str(dto.company_id)})

            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact_id,
                type="association_added",
                subtype="system",
                actor_user_id=actor_user_id,
                payload={
                    "kind": "contact_company",
                    "event": "association_added",
                    "companyId": dto.company_id,
                    "role": dto.role,
                    "isPrimary": dto.is_primary,
                },
            )
            association = append_row(
                session,
                CRMContactCompanyAssociation,
                workspace_id=workspace_id,
                contact_id=contact_id,
                company_id=dto.company_id,
                role=dto.role,
                is_primary=dto.is_primary,
            )
            result = AssociationMutationResult(
                association=CompanyAssociationRead.model_validate(association),
                activities=_activity_reads([activity]),
            )
        return result

    def update_association(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        company_id: uuid.UUID,
        dto: CompanyAssociationUpdate,
    ) -> AssociationMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            self._load_pair(session, workspace_id, contact_id, company_id)
            latest = self._require_active(session, workspace_id, contact_id, company_id)

            next_role = dto.role if dto.role is not None else latest.role
            next_is_primary = dto.is_primary if dto.is_primary is not None else latest.is_primary
            primary_changed = next_is_primary != latest.is_primary
            if next_role == latest.role and not primary_changed:
                raise InvalidInputError("No changes")

            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact_id,
                type="association_added",
                subtype="system",
                actor_user_id=actor_user_id,
                payload={
                    "kind": "contact_company",
                    "event": "primary_set" if primary_changed else "role_changed",
                    "companyId": company_id,
                    "from": {"role": latest.role, "isPrimary": latest.is_primary},
                    "to": {"role": next_role, "isPrimary": next_is_primary},
                },
            )
            association = append_row(
                session,
                CRMContactCompanyAssociation,
                workspace_id=workspace_id,
                contact_id=contact_id,
                company_id=company_id,
                role=next_role,
                is_primary=next_is_primary,
            )
            result = AssociationMutationResult(
                association=CompanyAssociationRead.model_validate(association),
                activities=_activity_reads([activity]),
            )
        return result

    def disassociate(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        company_id: uuid.UUID,
    ) -> AssociationMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            _load_contact(session, workspace_id, contact_id)
            self.company_service._load_company(session, workspace_id, company_id)
            latest = self._require_active(session, workspace_id, contact_id, company_id)
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact_id,
                type="association_removed",
                subtype="system",
                actor_user_id=actor_user_id,
                payload={
                    "kind": "contact_company",
                    "event": "association_removed",
                    "companyId": company_id,
                    "role": latest.role,
                    "isPrimary": latest.is_primary,
                },
            )
            association = append_row(
                session,
                CRMContactCompanyAssociation,
                archived=True,
                workspace_id=workspace_id,
                contact_id=contact_id,
                company_id=company_id,
                role=latest.role,
                is_primary=latest.is_primary,
            )
            result = AssociationMutationResult(
                association=CompanyAssociationRead.model_validate(association),
                activities=_activity_reads([activity]),
            )
        return result

    def list_companies_for_contact(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> list[CompanyAssociationRead]:
        _load_contact(session, workspace_id, contact_id)
        rows = active_company_associations_for_contact(session, workspace_id, contact_id)
        return [CompanyAssociationRead.model_validate(row) for row in rows]

    def list_contacts_for_company(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        company_id: uuid.UUID,
    ) -> list[CompanyAssociationRead]:
        self.company_service._load_company(session, workspace_id, company_id)
        rows = active_contact_associations_for_company(session, workspace_id, company_id)
        return [CompanyAssociationRead.model_validate(row) for row in rows]

    def _load_pair(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        company_id: uuid.UUID,
    ) -> tuple[CRMContact, CRMCompany]:
        contact = _load_active_contact(session, workspace_id, contact_id)
        company = self.company_service._load_company(session, workspace_id, company_id)
        if company.archived_at is not None:
            raise AlreadyArchivedError("Company is archived", details={"companyId": str(company_id)})
        return contact, company

    def _require_active(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        company_id: uuid.UUID,
    ) -> CRMContactCompanyAssociation:
        latest = latest_row(
            session,
            CRMContactCompanyAssociation,
            workspace_id=workspace_id,
            contact_id=contact_id,
            company_id=company_id,
        )
        if latest is None or latest.archived_at is not None:
            raise AssociationNotFoundError("No active association", details={"companyId": str(company_id)})
        return latest


class PipelineService:
    def create_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: PipelineCreate,
    ) -> PipelineRead:
        _require_actor(actor_user)
        with unit_of_work(session):
            _require_workspace(session, workspace_id)
            pipeline = CRMPipeline(workspace_id=workspace_id, name=dto.name.strip(), order=dto.order)
            session.add(pipeline)
            session.flush()
            result = PipelineRead(id=pipeline.id, workspace_id=workspace_id, name=pipeline.name, order=pipeline.order)
        return result

    def add_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        pipeline_id: uuid.UUID,
        dto: PipelineStageCreate,
    ) -> PipelineStageRead:
        _require_actor(actor_user)
        with unit_of_work(session):
            pipeline = self._load_pipeline(session, workspace_id, pipeline_id)
            stage = CRMPipelineStage(
                workspace_id=workspace_id,
                pipeline_id=pipeline.id,
                name=dto.name.strip(),
                order=dto.order,
                is_closed_won=dto.is_closed_won,
                is_closed_lost=dto.is_closed_lost,
            )
            session.add(stage)
            session.flush()
            result = PipelineStageRead.model_validate(stage)
        return result

    def list_pipelines(self, session: Session, workspace_id: uuid.UUID) -> list[PipelineRead]:
        pipelines = session.scalars(
            select(CRMPipeline)
            .where(and_(CRMPipeline.workspace_id == workspace_id, CRMPipeline.archived_at.is_(None)))
            .order_by(CRMPipeline.order.asc(), CRMPipeline.created_at.asc())
        ).all()
        return [
            PipelineRead(
                id=pipeline.id,
                workspace_id=pipeline.workspace_id,
                name=pipeline.name,
                order=pipeline.order,
                stages=[PipelineStageRead.model_validate(stage) for stage in pipeline.stages if stage.archived_at is None],
            )
            for pipeline in pipelines
        ]

    def create_ticket_pipeline(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: PipelineCreate,
    ) -> TicketPipelineRead:
        _require_actor(actor_user)
        with unit_of_work(session):
            _require_workspace(session, workspace_id)
            pipeline = CRMTicketPipeline(workspace_id=workspace_id, name=dto.name.strip(), order=dto.order)
            session.add(pipeline)
            session.flush()
            result = TicketPipelineRead(
                id=pipeline.id,
                workspace_id=workspace_id,
                name=pipeline.name,
                order=pipeline.order,
            )
        return result

    def add_ticket_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        pipeline_id: uuid.UUID,
        dto: TicketStageCreate,
    ) -> TicketStageRead:
        _require_actor(actor_user)
        with unit_of_work(session):
            pipeline = self._load_ticket_pipeline(session, workspace_id, pipeline_id)
            stage = CRMTicketStage(
                workspace_id=workspace_id,
                pipeline_id=pipeline.id,
                name=dto.name.strip(),
                order=dto.order,
                is_closed=dto.is_closed,
            )
            session.add(stage)
            session.flush()
            result = TicketStageRead.model_validate(stage)
        return result

    def list_ticket_pipelines(self, session: Session, workspace_id: uuid.UUID) -> list[TicketPipelineRead]:
        pipelines = session.scalars(
            select(CRMTicketPipeline)
            .where(and_(CRMTicketPipeline.workspace_id == workspace_id, CRMTicketPipeline.archived_at.is_(None)))
            .order_by(CRMTicketPipeline.order.asc(), CRMTicketPipeline.created_at.asc())
        ).all()
        return [
            TicketPipelineRead(
                id=pipeline.id,
                workspace_id=pipeline.workspace_id,
                name=pipeline.name,
                order=pipeline.order,
                stages=[TicketStageRead.model_validate(stage) for stage in pipeline.stages if stage.archived_at is None],
            )
            for pipeline in pipelines
        ]

    def _load_pipeline(self, session: Session, workspace_id: uuid.UUID, pipeline_id: uuid.UUID) -> CRMPipeline:
        pipeline = session.scalar(
            select(CRMPipeline).where(
                and_(
                    CRMPipeline.id == pipeline_id,
                    CRMPipeline.workspace_id == workspace_id,
                    CRMPipeline.archived_at.is_(None),
                )
            )
        )
        if pipeline is None:
            raise NotFoundError("Pipeline not found", details={"pipelineId": str(pipeline_id)})
        return pipeline

    def _load_ticket_pipeline(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        pipeline_id: uuid.UUID,
    ) -> CRMTicketPipeline:
        pipeline = session.scalar(
            select(CRMTicketPipeline).where(
                and_(
                    CRMTicketPipeline.id == pipeline_id,
                    CRMTicketPipeline.workspace_id == workspace_id,
                    CRMTicketPipeline.archived_at.is_(None),
                )
            )
        )
        if pipeline is None:
            raise NotFoundError("Ticket pipeline not found", details={"pipelineId": str(pipeline_id)})
        return pipeline


def _deal_status(stage: CRMPipelineStage) -> str:
    if stage.is_closed_won:
        return "won"
    if stage.is_closed_lost:
        return "lost"
    return "open"


class DealService:
    """Deal commands. Deal events land on the active primary contact."""

    def __init__(self) -> None:
        self.pipeline_service = PipelineService()

    def create_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: DealCreate,
    ) -> DealMutationResult:
        actor_user_id = _require_actor(actor_user)
        name = dto.name.strip()
        if not name:
            raise InvalidInputError("name is required")

        with unit_of_work(session):
            contact = _load_active_contact(session, workspace_id, dto.primary_contact_id)
            pipeline = self.pipeline_service._load_pipeline(session, workspace_id, dto.pipeline_id)
            stage = self._load_stage(session, workspace_id, pipeline.id, dto.stage_id)
            status = _deal_status(stage)

            deal = CRMDeal(
                workspace_id=workspace_id,
                name=name,
                amount=dto.amount,
                currency=dto.currency,
                pipeline_id=pipeline.id,
                stage_id=stage.id,
                status=status,
                created_at=ledger_now(),
            )
            session.add(deal)
            session.flush()
            append_row(
                session,
                CRMDealContactAssociation,
                workspace_id=workspace_id,
                deal_id=deal.id,
                contact_id=contact.id,
                is_primary=True,
            )
            occurred_at = _as_utc(dto.occurred_at)
            activities = [
                self._emit(session, deal, contact.id, "deal_created", actor_user_id, occurred_at),
            ]
            if status in {"won", "lost"}:
                activities.append(self._emit(session, deal, contact.id, f"deal_{status}", actor_user_id, occurred_at))
            result = DealMutationResult(deal=self._to_read(session, deal), activities=_activity_reads(activities))
        return result

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        deal_id: uuid.UUID,
        stage_id: uuid.UUID,
    ) -> DealMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            deal = self._load_live_deal(session, workspace_id, deal_id)
            stage = self._load_stage(session, workspace_id, deal.pipeline_id, stage_id)
            primary_id = self._require_primary(session, deal).lead_contact_id
            status = _deal_status(stage)
            deal.stage_id = stage.id
            deal.status = status
            session.flush()
            activities = [self._emit(session, deal, primary_id, "deal_stage_changed", actor_user_id)]
            if status in {"won", "lost"}:
                activities.append(self._emit(session, deal, primary_id, f"deal_{status}", actor_user_id))
            result = DealMutationResult(deal=self._to_read(session, deal), activities=_activity_reads(activities))
        return result

    def archive_deal(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        deal_id: uuid.UUID,
    ) -> DealMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            deal = self._load_deal(session, workspace_id, deal_id)
            if deal.archived_at is not None:
                raise AlreadyArchivedError("Deal already archived", details={"dealId": str(deal_id)})
            primary_id = self._require_primary(session, deal).lead_contact_id
            archived_at = ledger_now()
            deal.archived_at = archived_at
            session.flush()
            activity = self._emit(session, deal, primary_id, "deal_archived", actor_user_id, archived_at)
            result = DealMutationResult(deal=self._to_read(session, deal), activities=_activity_reads([activity]))
        return result

    def associate_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        deal_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> DealMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            deal = self._load_live_deal(session, workspace_id, deal_id)
            _load_active_contact(session, workspace_id, contact_id)
            state = self._require_primary(session, deal)
            if state.is_active(contact_id):
                raise AlreadyAssociatedError("Association already active", details={"contactId": str(contact_id)})

            payload = self._member_payload(deal, contact_id)
            activities = [self._emit(session, deal, state.lead_contact_id, "association_added", actor_user_id, payload=payload)]
            if contact_id != state.lead_contact_id:
                activities.append(self._emit(session, deal, contact_id, "association_added", actor_user_id, payload=payload))
            append_row(
                session,
                CRMDealContactAssociation,
                workspace_id=workspace_id,
                deal_id=deal.id,
                contact_id=contact_id,
                is_primary=False,
            )
            result = DealMutationResult(deal=self._to_read(session, deal), activities=_activity_reads(activities))
        return result

    def disassociate_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        deal_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> DealMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            deal = self._load_live_deal(session, workspace_id, deal_id)
            state = self._require_primary(session, deal)
            if contact_id == state.lead_contact_id:
                raise CannotRemovePrimaryError("Cannot disassociate primary Contact")
            if not state.is_active(contact_id):
                raise AssociationNotFoundError("No active association", details={"contactId": str(contact_id)})
            if len(state.active) <= 1:
                raise MinimumContactsViolationError("Deal must have at least one Contact")

            payload = self._member_payload(deal, contact_id)
            activities = [
                self._emit(session, deal, state.lead_contact_id, "association_removed", actor_user_id, payload=payload),
                self._emit(session, deal, contact_id, "association_removed", actor_user_id, payload=payload),
            ]
            append_row(
                session,
                CRMDealContactAssociation,
                archived=True,
                workspace_id=workspace_id,
                deal_id=deal.id,
                contact_id=contact_id,
                is_primary=False,
            )
            result = DealMutationResult(deal=self._to_read(session, deal), activities=_activity_reads(activities))
        return result

    def get_deal(self, session: Session, workspace_id: uuid.UUID, deal_id: uuid.UUID) -> DealRead:
        return self._to_read(session, self._load_deal(session, workspace_id, deal_id))

    def list_deals(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        *,
        include_archived: bool = False,
        limit: int = 100,
    ) -> list[DealRead]:
        stmt = select(CRMDeal).where(CRMDeal.workspace_id == workspace_id)
        if not include_archived:
            stmt = stmt.where(CRMDeal.archived_at.is_(None))
        stmt = stmt.order_by(CRMDeal.created_at.desc(), CRMDeal.id.desc()).limit(limit)
        return [self._to_read(session, deal) for deal in session.scalars(stmt).all()]

    def _emit(
        self,
        session: Session,
        deal: CRMDeal,
        contact_id: uuid.UUID,
        activity_type: str,
        actor_user_id: str,
        occurred_at: datetime | None = None,
        *,
        payload: dict[str, Any] | None = None,
    ) -> CRMActivity:
        return emit_activity(
            session,
            workspace_id=deal.workspace_id,
            contact_id=contact_id,
            type=activity_type,
            subtype="system",
            actor_user_id=actor_user_id,
            payload=payload or {"dealId": deal.id, "pipelineId": deal.pipeline_id, "stageId": deal.stage_id},
            occurred_at=occurred_at,
        )

    def _member_payload(self, deal: CRMDeal, contact_id: uuid.UUID) -> dict[str, Any]:
        return {
            "kind": "deal_contact",
            "dealId": deal.id,
            "pipelineId": deal.pipeline_id,
            "stageId": deal.stage_id,
            "contactId": contact_id,
        }

    def _load_deal(self, session: Session, workspace_id: uuid.UUID, deal_id: uuid.UUID) -> CRMDeal:
        deal = session.scalar(select(CRMDeal).where(and_(CRMDeal.id == deal_id, CRMDeal.workspace_id == workspace_id)))
        if deal is None:
            raise NotFoundError("Deal not found", details={"dealId": str(deal_id)})
        return deal

    def _load_live_deal(self, session: Session, workspace_id: uuid.UUID, deal_id: uuid.UUID) -> CRMDeal:
        deal = self._load_deal(session, workspace_id, deal_id)
        if deal.archived_at is not None:
            raise AlreadyArchivedError("Deal is archived", details={"dealId": str(deal_id)})
        return deal

    def _load_stage(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
    ) -> CRMPipelineStage:
        stage = session.scalar(
            select(CRMPipelineStage).where(
                and_(
                    CRMPipelineStage.id == stage_id,
                    CRMPipelineStage.workspace_id == workspace_id,
                    CRMPipelineStage.archived_at.is_(None),
                )
            )
        )
        if stage is None or stage.pipeline_id != pipeline_id:
            raise NotFoundError("Stage not found for pipeline", details={"stageId": str(stage_id)})
        return stage

    def _require_primary(self, session: Session, deal: CRMDeal) -> MemberState:
        state = deal_contact_state(session, deal.workspace_id, deal.id)
        if state.lead_contact_id is None:
            raise NoActiveAssociationError("Deal has no active primary Contact", details={"dealId": str(deal.id)})
        return state

    def _to_read(self, session: Session, deal: CRMDeal) -> DealRead:
        state = deal_contact_state(session, deal.workspace_id, deal.id)
        read = DealRead.model_validate(deal)
        read.primary_contact_id = state.lead_contact_id
        read.contact_ids = state.active_contact_ids
        return read


class TicketService:
    """Ticket commands, mirroring deals with the requester in place of the primary contact."""

    def __init__(self) -> None:
        self.pipeline_service = PipelineService()
        self.deal_service = DealService()

    def create_ticket(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: TicketCreate,
    ) -> TicketMutationResult:
        actor_user_id = _require_actor(actor_user)
        subject = dto.subject.strip()
        if not subject:
            raise InvalidInputError("subject is required")
        if len(subject) > TICKET_SUBJECT_MAX_LENGTH:
            raise InvalidInputError(f"subject must be at most {TICKET_SUBJECT_MAX_LENGTH} characters")
        requester_id = dto.requester_contact_id
        additional_ids = list(dict.fromkeys(cid for cid in dto.additional_contact_ids if cid != requester_id))

        with unit_of_work(session):
            _load_active_contact(session, workspace_id, requester_id)
            for contact_id in additional_ids:
                contact = session.scalar(
                    select(CRMContact).where(and_(CRMContact.id == contact_id, CRMContact.workspace_id == workspace_id))
                )
                if contact is None or contact.archived_at is not None:
                    raise InvalidInputError("Invalid additional contact", details={"contactId": str(contact_id)})
            if dto.deal_id is not None:
                deal = session.scalar(
                    select(CRMDeal).where(and_(CRMDeal.id == dto.deal_id, CRMDeal.workspace_id == workspace_id))
                )
                if deal is None or deal.archived_at is not None:
                    raise InvalidInputError("Invalid dealId", details={"dealId": str(dto.deal_id)})

            stage = self._resolve_create_stage(session, workspace_id, dto)
            status = "closed" if stage.is_closed else "open"
            ticket = CRMTicket(
                workspace_id=workspace_id,
                subject=subject,
                description=dto.description,
                priority=dto.priority,
                status=status,
                pipeline_id=stage.pipeline_id,
                stage_id=stage.id,
                deal_id=dto.deal_id,
                created_at=ledger_now(),
            )
            session.add(ticket)
            session.flush()
            append_row(
                session,
                CRMTicketContactAssociation,
                workspace_id=workspace_id,
                ticket_id=ticket.id,
                contact_id=requester_id,
                is_requester=True,
            )
            for contact_id in additional_ids:
                append_row(
                    session,
                    CRMTicketContactAssociation,
                    workspace_id=workspace_id,
                    ticket_id=ticket.id,
                    contact_id=contact_id,
                    is_requester=False,
                )

            occurred_at = _as_utc(dto.occurred_at)
            activities = [
                self._emit(
                    session,
                    ticket,
                    requester_id,
                    "ticket_created",
                    actor_user_id,
                    occurred_at,
                    payload={"ticketId": ticket.id, "subject": subject, "status": status, "priority": ticket.priority},
                )
            ]
            for contact_id in [requester_id, *additional_ids]:
                activities.append(
                    self._emit(
                        session,
                        ticket,
                        contact_id,
                        "association_added",
                        actor_user_id,
                        occurred_at,
                        payload=self._association_payload(ticket, contact_id, "association_added"),
                    )
                )
            activities.append(
                self._emit(
                    session,
                    ticket,
                    requester_id,
                    "association_added",
                    actor_user_id,
                    occurred_at,
                    payload=self._association_payload(ticket, requester_id, "requester_set"),
                )
            )
            result = TicketMutationResult(ticket=self._to_read(session, ticket), activities=_activity_reads(activities))
        return result

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        ticket_id: uuid.UUID,
        stage_id: uuid.UUID,
    ) -> TicketMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            ticket = self._load_live_ticket(session, workspace_id, ticket_id)
            stage = self._load_stage(session, workspace_id, ticket.pipeline_id, stage_id)
            requester_id = self._require_requester(session, ticket).lead_contact_id
            was_closed = ticket.status == "closed"
            now_closed = stage.is_closed

            activities = [
                self._emit(
                    session,
                    ticket,
                    requester_id,
                    "ticket_stage_changed",
                    actor_user_id,
                    payload={"ticketId": ticket.id, "pipelineId": ticket.pipeline_id, "stageId": stage.id},
                )
            ]
            ticket.stage_id = stage.id
            ticket.status = "closed" if now_closed else "open"
            session.flush()
            if not was_closed and now_closed:
                activities.append(self._emit(session, ticket, requester_id, "ticket_closed", actor_user_id))
            elif was_closed and not now_closed:
                activities.append(self._emit(session, ticket, requester_id, "ticket_reopened", actor_user_id))
            result = TicketMutationResult(ticket=self._to_read(session, ticket), activities=_activity_reads(activities))
        return result

    def archive_ticket(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        ticket_id: uuid.UUID,
    ) -> TicketMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            ticket = self._load_ticket(session, workspace_id, ticket_id)
            if ticket.archived_at is not None:
                raise AlreadyArchivedError("Ticket already archived", details={"ticketId": str(ticket_id)})
            requester_id = self._require_requester(session, ticket).lead_contact_id
            archived_at = ledger_now()
            ticket.archived_at = archived_at
            session.flush()
            activity = self._emit(session, ticket, requester_id, "ticket_archived", actor_user_id, archived_at)
            result = TicketMutationResult(ticket=self._to_read(session, ticket), activities=_activity_reads([activity]))
        return result

    def associate_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        ticket_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> TicketMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            ticket = self._load_live_ticket(session, workspace_id, ticket_id)
            _load_active_contact(session, workspace_id, contact_id)
            state = self._require_requester(session, ticket)
            if state.is_active(contact_id):
                raise AlreadyAssociatedError("Association already active", details={"contactId": str(contact_id)})

            payload = self._member_payload(ticket, contact_id)
            activities = [
                self._emit(session, ticket, state.lead_contact_id, "association_added", actor_user_id, payload=payload)
            ]
            if contact_id != state.lead_contact_id:
                activities.append(self._emit(session, ticket, contact_id, "association_added", actor_user_id, payload=payload))
            append_row(
                session,
                CRMTicketContactAssociation,
                workspace_id=workspace_id,
                ticket_id=ticket.id,
                contact_id=contact_id,
                is_requester=False,
            )
            result = TicketMutationResult(ticket=self._to_read(session, ticket), activities=_activity_reads(activities))
        return result

    def disassociate_contact(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        ticket_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> TicketMutationResult:
        actor_user_id = _require_actor(actor_user)

        with unit_of_work(session):
            ticket = self._load_live_ticket(session, workspace_id, ticket_id)
            state = self._require_requester(session, ticket)
            if contact_id == state.lead_contact_id:
                raise CannotRemovePrimaryError("Cannot disassociate requester Contact")
            if not state.is_active(contact_id):
                raise AssociationNotFoundError("No active association", details={"contactId": str(contact_id)})
            if len(state.active) <= 1:
                raise MinimumContactsViolationError("Ticket must have at least one Contact")

            payload = self._member_payload(ticket, contact_id)
            activities = [
                self._emit(session, ticket, state.lead_contact_id, "association_removed", actor_user_id, payload=payload),
                self._emit(session, ticket, contact_id, "association_removed", actor_user_id, payload=payload),
            ]
            append_row(
                session,
                CRMTicketContactAssociation,
                archived=True,
                workspace_id=workspace_id,
                ticket_id=ticket.id,
                contact_id=contact_id,
                is_requester=False,
            )
            result = TicketMutationResult(ticket=self._to_read(session, ticket), activities=_activity_reads(activities))
        return result

    def get_ticket(self, session: Session, workspace_id: uuid.UUID, ticket_id: uuid.UUID) -> TicketRead:
        return self._to_read(session, self._load_ticket(session, workspace_id, ticket_id))

    def list_tickets(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        *,
        include_archived: bool = False,
        limit: int = 100,
    ) -> list[TicketRead]:
        stmt = select(CRMTicket).where(CRMTicket.workspace_id == workspace_id)
        if not include_archived:
            stmt = stmt.where(CRMTicket.archived_at.is_(None))
        stmt = stmt.order_by(CRMTicket.created_at.desc(), CRMTicket.id.desc()).limit(limit)
        return [self._to_read(session, ticket) for ticket in session.scalars(stmt).all()]

    def list_tickets_for_contact(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> list[TicketRead]:
        _load_contact(session, workspace_id, contact_id)
        rows = active_rows(
            latest_rows(
                session,
                CRMTicketContactAssociation,
                group_by="ticket_id",
                workspace_id=workspace_id,
                contact_id=contact_id,
            )
        )
        tickets = [self._load_ticket(session, workspace_id, row.ticket_id) for row in rows]
        tickets.sort(key=lambda ticket: ticket.created_at, reverse=True)
        return [self._to_read(session, ticket) for ticket in tickets if ticket.archived_at is None]

    def _resolve_create_stage(self, session: Session, workspace_id: uuid.UUID, dto: TicketCreate) -> CRMTicketStage:
        if dto.stage_id is not None:
            stage = session.scalar(
                select(CRMTicketStage).where(
                    and_(
                        CRMTicketStage.id == dto.stage_id,
                        CRMTicketStage.workspace_id == workspace_id,
                        CRMTicketStage.archived_at.is_(None),
                    )
                )
            )
            if stage is None or (dto.pipeline_id is not None and stage.pipeline_id != dto.pipeline_id):
                raise NotFoundError("TicketStage not found for pipeline", details={"stageId": str(dto.stage_id)})
            return stage

        if dto.pipeline_id is not None:
            pipeline = self.pipeline_service._load_ticket_pipeline(session, workspace_id, dto.pipeline_id)
        else:
            pipeline = session.scalar(
                select(CRMTicketPipeline)
                .where(and_(CRMTicketPipeline.workspace_id == workspace_id, CRMTicketPipeline.archived_at.is_(None)))
                .order_by(CRMTicketPipeline.order.asc(), CRMTicketPipeline.created_at.asc())
                .limit(1)
            )
            if pipeline is None:
                raise NotFoundError("No ticket pipeline configured")

        stages = [stage for stage in pipeline.stages if stage.archived_at is None]
        if not stages:
            raise NotFoundError("No ticket stages configured", details={"pipelineId": str(pipeline.id)})
        wants_closed = dto.status == "closed"
        return next((stage for stage in stages if stage.is_closed == wants_closed), stages[0])

    def _emit(
        self,
        session: Session,
        ticket: CRMTicket,
        contact_id: uuid.UUID,
        activity_type: str,
        actor_user_id: str,
        occurred_at: datetime | None = None,
        *,
        payload: dict[str, Any] | None = None,
    ) -> CRMActivity:
        return emit_activity(
            session,
            workspace_id=ticket.workspace_id,
            contact_id=contact_id,
            type=activity_type,
            subtype="system",
            actor_user_id=actor_user_id,
            payload=payload or {"ticketId": ticket.id, "pipelineId": ticket.pipeline_id, "stageId": ticket.stage_id},
            occurred_at=occurred_at,
        )

    def _association_payload(self, ticket: CRMTicket, contact_id: uuid.UUID, event: str) -> dict[str, Any]:
        return {"kind": "ticket_contact", "event": event, "ticketId": ticket.id, "contactId": contact_id}

    def _member_payload(self, ticket: CRMTicket, contact_id: uuid.UUID) -> dict[str, Any]:
        return {
            "kind": "ticket_contact",
            "ticketId": ticket.id,
            "pipelineId": ticket.pipeline_id,
            "stageId": ticket.stage_id,
            "contactId": contact_id,
        }

    def _load_ticket(self, session: Session, workspace_id: uuid.UUID, ticket_id: uuid.UUID) -> CRMTicket:
        ticket = session.scalar(
            select(CRMTicket).where(and_(CRMTicket.id == ticket_id, CRMTicket.workspace_id == workspace_id))
        )
        if ticket is None:
            raise NotFoundError("Ticket not found", details={"ticketId": str(ticket_id)})
        return ticket

    def _load_live_ticket(self, session: Session, workspace_id: uuid.UUID, ticket_id: uuid.UUID) -> CRMTicket:
        ticket = self._load_ticket(session, workspace_id, ticket_id)
        if ticket.archived_at is not None:
            raise AlreadyArchivedError("Ticket is archived", details={"ticketId": str(ticket_id)})
        return ticket

    def _load_stage(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        pipeline_id: uuid.UUID,
        stage_id: uuid.UUID,
    ) -> CRMTicketStage:
        stage = session.scalar(
            select(CRMTicketStage).where(
                and_(
                    CRMTicketStage.id == stage_id,
                    CRMTicketStage.workspace_id == workspace_id,
                    CRMTicketStage.archived_at.is_(None),
                )
            )
        )
        if stage is None or stage.pipeline_id != pipeline_id:
            raise NotFoundError("TicketStage not found for pipeline", details={"stageId": str(stage_id)})
        return stage

    def _require_requester(self, session: Session, ticket: CRMTicket) -> MemberState:
        state = ticket_contact_state(session, ticket.workspace_id, ticket.id)
        if state.lead_contact_id is None:
            raise NoActiveAssociationError("Ticket has no active requester Contact", details={"ticketId": str(ticket.id)})
        return state

    def _to_read(self, session: Session, ticket: CRMTicket) -> TicketRead:
        state = ticket_contact_state(session, ticket.workspace_id, ticket.id)
        read = TicketRead.model_validate(ticket)
        read.requester_contact_id = state.lead_contact_id
        read.contact_ids = state.active_contact_ids
        return read


class EngagementService:
    """Logged engagements. Each call appends exactly one Activity on an active contact."""

    def log_task(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: TaskLog,
    ) -> ActivityRead:
        payload: dict[str, Any] = {"title": dto.title.strip()}
        if dto.due_at is not None:
            payload["dueAt"] = _as_utc(dto.due_at)
        if dto.assignee_user_id:
            payload["assigneeUserId"] = dto.assignee_user_id
        if dto.completed_at is not None:
            payload["completedAt"] = _as_utc(dto.completed_at)
        return self._log(
            session,
            actor_user,
            workspace_id,
            contact_id,
            "task_created",
            "task",
            payload,
            dto.occurred_at,
            ticket_id=dto.ticket_id,
        )

    def complete_task(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        task_activity_id: uuid.UUID,
    ) -> ActivityRead:
        task = session.scalar(
            select(CRMActivity).where(
                and_(
                    CRMActivity.id == task_activity_id,
                    CRMActivity.workspace_id == workspace_id,
                    CRMActivity.contact_id == contact_id,
                    CRMActivity.type == "task_created",
                )
            )
        )
        if task is None:
            raise NotFoundError("Task not found", details={"activityId": str(task_activity_id)})
        completed = session.scalar(
            select(CRMActivity.id).where(
                and_(
                    CRMActivity.workspace_id == workspace_id,
                    CRMActivity.contact_id == contact_id,
                    CRMActivity.type == "task_completed",
                    CRMActivity.payload["taskActivityId"].as_string() == str(task_activity_id),
                )
            )
        )
        if completed is not None:
            raise AlreadyArchivedError("Task already completed", details={"activityId": str(task_activity_id)})
        payload = {"taskActivityId": task.id, "title": task.payload.get("title"), "completedAt": ledger_now()}
        return self._log(session, actor_user, workspace_id, contact_id, "task_completed", "task", payload, None)

    def log_note(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: NoteLog,
    ) -> ActivityRead:
        payload = {"body": dto.body, "mentions": list(dto.mentions)}
        return self._log(
            session,
            actor_user,
            workspace_id,
            contact_id,
            "note_added",
            "note",
            payload,
            dto.occurred_at,
            ticket_id=dto.ticket_id,
        )

    def log_email(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: EmailLog,
    ) -> ActivityRead:
        payload: dict[str, Any] = {
            "subject": dto.subject,
            "to": list(dto.to),
            "cc": list(dto.cc),
            "direction": dto.direction,
        }
        if dto.message_id:
            payload["messageId"] = dto.message_id
        if dto.provider:
            payload["provider"] = dto.provider
        return self._log(
            session,
            actor_user,
            workspace_id,
            contact_id,
            "email_sent",
            "email",
            payload,
            dto.occurred_at,
            ticket_id=dto.ticket_id,
        )

    def log_email_opened(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        message_id: str,
        occurred_at: datetime | None = None,
    ) -> ActivityRead:
        if not message_id.strip():
            raise InvalidInputError("messageId is required")
        payload = {"messageId": message_id.strip()}
        return self._log(session, actor_user, workspace_id, contact_id, "email_opened", "email", payload, occurred_at)

    def log_call(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: CallLog,
    ) -> ActivityRead:
        payload: dict[str, Any] = {"direction": dto.direction}
        if dto.duration_seconds is not None:
            payload["durationSeconds"] = dto.duration_seconds
        if dto.outcome:
            payload["outcome"] = dto.outcome
        return self._log(
            session,
            actor_user,
            workspace_id,
            contact_id,
            "call_logged",
            "call",
            payload,
            dto.occurred_at,
            ticket_id=dto.ticket_id,
        )

    def log_meeting(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: MeetingLog,
    ) -> ActivityRead:
        start_at = _as_utc(dto.start_at)
        end_at = _as_utc(dto.end_at)
        if end_at is not None and start_at is not None and end_at < start_at:
            raise InvalidInputError("endAt must not be before startAt")
        payload: dict[str, Any] = {"startAt": start_at, "attendees": list(dto.attendees)}
        if end_at is not None:
            payload["endAt"] = end_at
        if dto.location:
            payload["location"] = dto.location
        return self._log(
            session,
            actor_user,
            workspace_id,
            contact_id,
            "meeting_held",
            "meeting",
            payload,
            dto.occurred_at or start_at,
            ticket_id=dto.ticket_id,
        )

    def _log(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        activity_type: str,
        subtype: str,
        payload: dict[str, Any],
        occurred_at: datetime | None,
        *,
        ticket_id: uuid.UUID | None = None,
    ) -> ActivityRead:
        actor_user_id = _require_actor(actor_user)
        with unit_of_work(session):
            _load_active_contact(session, workspace_id, contact_id)
            if ticket_id is not None:
                ticket = session.scalar(
                    select(CRMTicket).where(and_(CRMTicket.id == ticket_id, CRMTicket.workspace_id == workspace_id))
                )
                if ticket is None:
                    raise NotFoundError("Ticket not found", details={"ticketId": str(ticket_id)})
                payload = {**payload, "ticketId": ticket_id}
            activity = emit_activity(
                session,
                workspace_id=workspace_id,
                contact_id=contact_id,
                type=activity_type,
                subtype=subtype,
                actor_user_id=actor_user_id,
                payload=payload,
                occurred_at=_as_utc(occurred_at),
            )
            result = ActivityRead.model_validate(activity)
        return result


class WorkflowService:
    def create_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        dto: WorkflowCreate,
    ) -> WorkflowRead:
        _require_actor(actor_user)
        name = dto.name.strip()
        if not name:
            raise InvalidInputError("name is required")
        trigger_types = list(dict.fromkeys(item.strip() for item in dto.trigger_types))
        if not trigger_types:
            raise InvalidInputError("triggerTypes must be a non-empty list")
        invalid = [item for item in trigger_types if item not in ACTIVITY_TYPES]
        if invalid:
            raise InvalidInputError("Unsupported trigger types", details={"triggerTypes": invalid})
        for step in dto.steps:
            parse_workflow_step(step.action_type, step.config)

        with unit_of_work(session):
            _require_workspace(session, workspace_id)
            workflow = CRMWorkflow(
                workspace_id=workspace_id,
                name=name,
                trigger_types=trigger_types,
                enabled=False,
                created_at=ledger_now(),
            )
            session.add(workflow)
            session.flush()
            for index, step in enumerate(dto.steps):
                session.add(
                    CRMWorkflowStep(
                        workflow_id=workflow.id,
                        order=step.order if step.order is not None else index + 1,
                        action_type=step.action_type,
                        config=dict(step.config),
                        created_at=ledger_now(),
                    )
                )
            session.flush()
            session.refresh(workflow, attribute_names=["steps"])
            result = self._to_read(workflow)

        logger.info("crm.workflow.created", extra={"workspace_id": str(workspace_id), "workflow_id": str(result.id)})
        return result

    def enable_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        workflow_id: uuid.UUID,
    ) -> WorkflowRead:
        _require_actor(actor_user)
        with unit_of_work(session):
            workflow = self._load_workflow(session, workspace_id, workflow_id)
            if workflow.archived_at is not None:
                raise AlreadyArchivedError("Workflow is archived", details={"workflowId": str(workflow_id)})
            workflow.enabled = True
            session.flush()
            result = self._to_read(workflow)
        logger.info("crm.workflow.enabled", extra={"workspace_id": str(workspace_id), "workflow_id": str(workflow_id)})
        return result

    def disable_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        workflow_id: uuid.UUID,
    ) -> WorkflowRead:
        _require_actor(actor_user)
        with unit_of_work(session):
            workflow = self._load_workflow(session, workspace_id, workflow_id)
            workflow.enabled = False
            session.flush()
            result = self._to_read(workflow)
        logger.info("crm.workflow.disabled", extra={"workspace_id": str(workspace_id), "workflow_id": str(workflow_id)})
        return result

    def archive_workflow(
        self,
        session: Session,
        actor_user: ActorUser,
        workspace_id: uuid.UUID,
        workflow_id: uuid.UUID,
    ) -> WorkflowRead:
        _require_actor(actor_user)
        with unit_of_work(session):
            workflow = self._load_workflow(session, workspace_id, workflow_id)
            if workflow.archived_at is not None:
                raise AlreadyArchivedError("Workflow already archived", details={"workflowId": str(workflow_id)})
            workflow.archived_at = ledger_now()
            workflow.enabled = False
            session.flush()
            result = self._to_read(workflow)
        logger.info("crm.workflow.archived", extra={"workspace_id": str(workspace_id), "workflow_id": str(workflow_id)})
        return result

    def list_workflows(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        *,
        include_archived: bool = False,
    ) -> list[WorkflowRead]:
        stmt = select(CRMWorkflow).where(CRMWorkflow.workspace_id == workspace_id)
        if not include_archived:
            stmt = stmt.where(CRMWorkflow.archived_at.is_(None))
        stmt = stmt.order_by(CRMWorkflow.created_at.desc(), CRMWorkflow.id.desc())
        return [self._to_read(workflow) for workflow in session.scalars(stmt).all()]

    def list_executions(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        workflow_id: uuid.UUID,
        *,
        limit: int = 100,
    ) -> list[WorkflowExecutionRead]:
        self._load_workflow(session, workspace_id, workflow_id)
        stmt = (
            select(CRMWorkflowExecution)
            .where(CRMWorkflowExecution.workflow_id == workflow_id)
            .order_by(CRMWorkflowExecution.executed_at.desc(), CRMWorkflowExecution.id.desc())
            .limit(limit)
        )
        return [WorkflowExecutionRead.model_validate(row) for row in session.scalars(stmt).all()]

    def _load_workflow(self, session: Session, workspace_id: uuid.UUID, workflow_id: uuid.UUID) -> CRMWorkflow:
        workflow = session.scalar(
            select(CRMWorkflow).where(and_(CRMWorkflow.id == workflow_id, CRMWorkflow.workspace_id == workspace_id))
        )
        if workflow is None:
            raise NotFoundError("Workflow not found", details={"workflowId": str(workflow_id)})
        return workflow

    def _to_read(self, workflow: CRMWorkflow) -> WorkflowRead:
        read = WorkflowRead.model_validate(workflow)
        read.steps = [WorkflowStepRead.model_validate(step) for step in workflow.steps]
        return read


class ActivityService:
    def get_timeline(self, session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> list[ActivityRead]:
        _load_contact(session, workspace_id, contact_id)
        return _activity_reads(get_timeline(session, workspace_id, contact_id))

    def list_activities(
        self,
        session: Session,
        workspace_id: uuid.UUID,
        contact_id: uuid.UUID,
        *,
        limit: int | None = None,
        cursor: uuid.UUID | None = None,
    ) -> ActivityPage:
        settings = get_settings()
        _load_contact(session, workspace_id, contact_id)
        page_size = settings.activity_page_size_default if limit is None else limit
        page_size = max(1, min(page_size, settings.activity_page_size_max))
        rows, next_cursor = list_activity_page(session, workspace_id, contact_id, limit=page_size, cursor=cursor)
        return ActivityPage(items=_activity_reads(rows), next_cursor=next_cursor)
