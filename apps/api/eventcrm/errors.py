from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base error for CRM command and automation failures.

    ``code`` is the stable machine-readable identifier placed in the API error envelope and
    ``status_code`` is the HTTP status the API layer answers with.
    """

    code = "crm_error"
    status_code = 400

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class NotFoundError(CRMError):
    """Entity is absent or belongs to another workspace."""

    code = "not_found"
    status_code = 404


class AlreadyArchivedError(CRMError):
    """The entity already reached its terminal archived state."""

    code = "already_archived"
    status_code = 409


class ContactArchivedError(AlreadyArchivedError):
    code = "contact_archived"


class AlreadyAssociatedError(CRMError):
    code = "already_associated"
    status_code = 409


class AlreadyExistsError(CRMError):
    code = "already_exists"
    status_code = 409


class NoActiveAssociationError(CRMError):
    """No active (latest, non-archived) association row exists for the key."""

    code = "no_active_association"
    status_code = 409


class AssociationNotFoundError(NoActiveAssociationError):
    """The specific pair targeted by an update or removal has no active row."""

    status_code = 404


class InvalidInputError(CRMError):
    code = "invalid_input"
    status_code = 400


class InvalidPropertyValueError(CRMError):
    """Raised when a value does not match its ContactPropertyDefinition type."""

    code = "invalid_property_value"
    status_code = 400

    def __init__(self, property_key: str, reason: str) -> None:
        self.property_key = property_key
        self.reason = reason
        super().__init__(reason, details={"propertyKey": property_key})


class ForbiddenMutationError(CRMError):
    """Raised when an update or delete targets an append-only or archive-only entity."""

    code = "forbidden_mutation"
    status_code = 403

    def __init__(self, entity: str, verb: str) -> None:
        self.entity = entity
        self.verb = verb
        super().__init__(f"{verb} is forbidden for append-only entity '{entity}'", details={"entity": entity, "verb": verb})


class MinimumContactsViolationError(CRMError):
    code = "minimum_contacts_violation"
    status_code = 409


class CannotRemovePrimaryError(CRMError):
    code = "cannot_remove_primary"
    status_code = 409


class UnsupportedActionTypeError(CRMError):
    code = "unsupported_action_type"
    status_code = 400

    def __init__(self, action_type: str) -> None:
        self.action_type = action_type
        super().__init__(f"Unsupported workflow action type: {action_type}", details={"actionType": action_type})


class InternalError(CRMError):
    code = "internal_error"
    status_code = 500
