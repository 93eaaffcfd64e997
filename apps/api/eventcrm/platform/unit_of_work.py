from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from eventcrm.errors import CRMError, InternalError


logger = logging.getLogger("eventcrm.platform.unit_of_work")


@contextmanager
def unit_of_work(session: Session) -> Iterator[Session]:
    """Run the enclosed writes as one transaction on ``session``.

    Commits when the block exits normally; rolls back and re-raises otherwise. Domain errors and
    unique-constraint violations propagate unchanged so callers can classify them, any other
    storage failure surfaces as ``InternalError``.
    """
    try:
        yield session
        session.commit()
    except (CRMError, IntegrityError):
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.error("unit_of_work.storage_failed", exc_info=True, extra={"error": str(exc)})
        raise InternalError("Storage operation failed", details={"error": type(exc).__name__}) from exc
    except Exception:
        session.rollback()
        raise
