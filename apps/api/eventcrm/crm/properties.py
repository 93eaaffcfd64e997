from __future__ import annotations

import json
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from eventcrm.errors import InvalidInputError, InvalidPropertyValueError
from eventcrm.crm.activities import isoformat_z
from eventcrm.crm.models import CRMContactPropertyDefinition, CRMContactPropertyValue, ledger_now


PROPERTY_TYPES = ("string", "number", "boolean", "date", "enum")
PROPERTY_KEY_RE = re.compile(r"^[a-z][a-z0-9_]*$")


def normalize_options(property_type: str, options: Any) -> list[str] | None:
    """Flatten ``{"values": [...]}`` into a list and check enum options are non-empty strings."""
    if isinstance(options, dict):
        options = options.get("values")
    if property_type != "enum":
        return None
    if not isinstance(options, list) or not options:
        raise InvalidInputError("Enum properties require a non-empty list of options")
    if any(not isinstance(item, str) or not item.strip() for item in options):
        raise InvalidInputError("Enum options must be non-empty strings")
    return list(options)


def _enum_values(options: Any) -> list[str] | None:
    if isinstance(options, list):
        return options
    if isinstance(options, dict) and isinstance(options.get("values"), list):
        return options["values"]
    return None


def _parse_iso_datetime(value: str) -> datetime | None:
    text = value.strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def validate_property_value(definition: CRMContactPropertyDefinition, value: Any) -> Any:
    """Check ``value`` against the definition's type and return its normalized form.

    Dates are normalized to UTC ``YYYY-MM-DDTHH:MM:SS.mmmZ``; every other type is returned as-is.
    """
    key = definition.key
    property_type = definition.type

    if property_type == "string":
        if not isinstance(value, str):
            raise InvalidPropertyValueError(key, "Invalid value type (expected string)")
        return value

    if property_type == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidPropertyValueError(key, "Invalid value type (expected number)")
        if isinstance(value, float) and not math.isfinite(value):
            raise InvalidPropertyValueError(key, "Invalid value type (expected number)")
        return value

    if property_type == "boolean":
        if not isinstance(value, bool):
            raise InvalidPropertyValueError(key, "Invalid value type (expected boolean)")
        return value

    if property_type == "date":
        if not isinstance(value, str):
            raise InvalidPropertyValueError(key, "Invalid value type (expected ISO date string)")
        parsed = _parse_iso_datetime(value)
        if parsed is None:
            raise InvalidPropertyValueError(key, "Invalid date value")
        return isoformat_z(parsed)

    if property_type == "enum":
        if not isinstance(value, str):
            raise InvalidPropertyValueError(key, "Invalid value type (expected string enum)")
        values = _enum_values(definition.options)
        if not values:
            raise InvalidPropertyValueError(key, "Enum options are not configured")
        if value not in values:
            raise InvalidPropertyValueError(key, "Value not in enum options")
        return value

    raise InvalidPropertyValueError(key, "Unsupported property type")


def _canonical(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, dict):
        return {str(key): _canonical(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    return value


def values_equal(left: Any, right: Any) -> bool:
    """Compare two stored values by their JSON form; ``1000`` and ``1000.0`` are equal."""
    return json.dumps(_canonical(left), sort_keys=True) == json.dumps(_canonical(right), sort_keys=True)


def get_definition(session: Session, workspace_id: uuid.UUID, key: str) -> CRMContactPropertyDefinition | None:
    return session.scalar(
        select(CRMContactPropertyDefinition).where(
            and_(
                CRMContactPropertyDefinition.workspace_id == workspace_id,
                CRMContactPropertyDefinition.key == key,
                CRMContactPropertyDefinition.archived_at.is_(None),
            )
        )
    )


def current_property_value(
    session: Session,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    key: str,
) -> tuple[bool, Any]:
    """Return ``(found, value)`` for the newest row; a cleared value comes back as ``(True, None)``."""
    row = session.scalar(
        select(CRMContactPropertyValue)
        .where(
            and_(
                CRMContactPropertyValue.workspace_id == workspace_id,
                CRMContactPropertyValue.contact_id == contact_id,
                CRMContactPropertyValue.property_key == key,
            )
        )
        .order_by(CRMContactPropertyValue.created_at.desc(), CRMContactPropertyValue.id.desc())
        .limit(1)
    )
    if row is None:
        return False, None
    return True, row.value


def current_property_values(session: Session, workspace_id: uuid.UUID, contact_id: uuid.UUID) -> dict[str, Any]:
    rows = session.scalars(
        select(CRMContactPropertyValue)
        .where(
            and_(
                CRMContactPropertyValue.workspace_id == workspace_id,
                CRMContactPropertyValue.contact_id == contact_id,
            )
        )
        .order_by(CRMContactPropertyValue.created_at.desc(), CRMContactPropertyValue.id.desc())
    )
    latest: dict[str, Any] = {}
    seen: set[str] = set()
    for row in rows:
        if row.property_key in seen:
            continue
        seen.add(row.property_key)
        if row.value is not None:
            latest[row.property_key] = row.value
    return dict(sorted(latest.items()))


def append_property_value(
    session: Session,
    workspace_id: uuid.UUID,
    contact_id: uuid.UUID,
    key: str,
    value: Any,
) -> CRMContactPropertyValue:
    row = CRMContactPropertyValue(
        workspace_id=workspace_id,
        contact_id=contact_id,
        property_key=key,
        value=value,
        created_at=ledger_now(),
    )
    session.add(row)
    session.flush()
    return row
