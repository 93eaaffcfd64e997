"""Polling automation engine and idempotent workflow execution.

The engine tails the Activity ledger by ``created_at``. Every triggering Activity is offered to the
enabled workflows of its workspace whose ``trigger_types`` contain the Activity's type, and each
(workflow, activity) pair executes at most once: the unique constraints on
``crm_workflow_execution`` decide which executor wins.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from eventcrm.context import reset_actor_user_id, set_actor_user_id
from eventcrm.core.config import Settings, get_settings
from eventcrm.errors import NotFoundError
from eventcrm.metrics import observe_automation_tick, observe_workflow_execution
from eventcrm.platform import unit_of_work
from eventcrm.crm.activities import TRIGGER_TYPES, emit_activity, isoformat_z
from eventcrm.crm.associations import append_row, latest_row
from eventcrm.crm.models import (
    CRMActivity,
    CRMCompany,
    CRMContactCompanyAssociation,
    CRMWorkflow,
    CRMWorkflowExecution,
    CRMWorkflowStep,
    ledger_now,
    utcnow,
)
from eventcrm.crm.properties import (
    append_property_value,
    current_property_value,
    get_definition,
    validate_property_value,
    values_equal,
)
from eventcrm.crm.schemas import (
    AssociateCompanyStep,
    CreateTaskStep,
    DelayStep,
    SendNotificationStep,
    SetPropertyStep,
    WorkflowStep,
    parse_workflow_step,
)


logger = logging.getLogger("eventcrm.crm.automation")
tracer = trace.get_tracer("eventcrm.crm.automation")

AUTOMATION_ACTOR = "automation"


def idempotency_key(workflow_id: uuid.UUID, activity_id: uuid.UUID) -> str:
    return hashlib.sha256(f"{workflow_id}:{activity_id}".encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class AutomationConfig:
    poll_interval_ms: int = 1500
    batch_size: int = 100
    initial_lookback_ms: int = 300_000

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AutomationConfig":
        settings = settings or get_settings()
        return cls(
            poll_interval_ms=settings.automation_poll_interval_ms,
            batch_size=settings.automation_batch_size,
            initial_lookback_ms=settings.automation_initial_lookback_ms,
        )


@dataclass(frozen=True)
class _Trigger:
    id: uuid.UUID
    workspace_id: uuid.UUID
    contact_id: uuid.UUID
    type: str
    created_at: datetime


class WorkflowExecutor:
    def __init__(self, sleep: Callable[[float], None] = time.sleep) -> None:
        self._sleep = sleep

    def execute(self, session: Session, workflow_id: uuid.UUID, activity_id: uuid.UUID) -> CRMWorkflowExecution | None:
        """Run ``workflow_id`` for the triggering ``activity_id`` unless the pair already ran.

        Step writes and the ``success`` record share one transaction, so a failing step or a
        lost race on the execution record leaves none of this run's writes behind.
        """
        existing = self._find_execution(session, workflow_id, activity_id)
        if existing is not None:
            return existing

        workflow = session.get(CRMWorkflow, workflow_id)
        if workflow is None:
            raise NotFoundError("Workflow not found", details={"workflowId": str(workflow_id)})
        activity = session.get(CRMActivity, activity_id)
        if activity is None or activity.workspace_id != workflow.workspace_id:
            raise NotFoundError("Activity not found", details={"activityId": str(activity_id)})
        trigger = _Trigger(
            id=activity.id,
            workspace_id=activity.workspace_id,
            contact_id=activity.contact_id,
            type=activity.type,
            created_at=activity.created_at,
        )

        if workflow.archived_at is not None or not workflow.enabled:
            reason = "archived" if workflow.archived_at is not None else "disabled"
            return self._record_outcome(session, workflow_id, trigger, "skipped", {"reason": reason})

        started = time.perf_counter()
        with tracer.start_as_current_span("automation.execute_workflow") as span:
            span.set_attribute("workflow_id", str(workflow_id))
            span.set_attribute("activity_id", str(trigger.id))
            try:
                with unit_of_work(session):
                    steps = session.scalars(
                        select(CRMWorkflowStep)
                        .where(CRMWorkflowStep.workflow_id == workflow_id)
                        .order_by(CRMWorkflowStep.order.asc(), CRMWorkflowStep.created_at.asc())
                    ).all()
                    for step in steps:
                        parsed = parse_workflow_step(step.action_type, step.config)
                        self._run_step(session, workflow_id, trigger, parsed, dict(step.config or {}))
                    execution = self._insert_execution(session, workflow_id, trigger, "success")
                    self._emit(session, workflow_id, trigger, "automation_execution_succeeded", {})
            except IntegrityError:
                winner = self._find_execution(session, workflow_id, trigger.id)
                logger.info(
                    "automation.execution_deduplicated",
                    extra={"workflow_id": str(workflow_id), "activity_id": str(trigger.id)},
                )
                return winner
            except Exception as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR, str(exc)))
                observe_workflow_execution("failed", time.perf_counter() - started)
                message = str(exc) or "Workflow execution failed"
                logger.warning(
                    "automation.execution_failed",
                    extra={"workflow_id": str(workflow_id), "activity_id": str(trigger.id), "error": message[:500]},
                )
                return self._record_outcome(session, workflow_id, trigger, "failed", {"error": message}, error=message)

        observe_workflow_execution("success", time.perf_counter() - started)
        logger.info(
            "automation.execution_succeeded",
            extra={
                "workflow_id": str(workflow_id),
                "activity_id": str(trigger.id),
                "execution_id": str(execution.id),
                "status": "success",
            },
        )
        return execution

    def _run_step(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        trigger: _Trigger,
        step: WorkflowStep,
        raw_config: dict[str, Any],
    ) -> None:
        if isinstance(step, DelayStep):
            # Runs inside the open transaction: locks taken by earlier steps are held until commit.
            self._sleep(step.duration_ms() / 1000)
            return
        if isinstance(step, CreateTaskStep):
            self._emit(session, workflow_id, trigger, "automation_task_created", {"task": raw_config})
            return
        if isinstance(step, SendNotificationStep):
            self._emit(session, workflow_id, trigger, "automation_internal_notification_sent", {"notification": raw_config})
            return
        if isinstance(step, SetPropertyStep):
            self._apply_set_property(session, workflow_id, trigger, step)
            return
        if isinstance(step, AssociateCompanyStep):
            self._apply_associate_company(session, workflow_id, trigger, step)
            return
        raise TypeError(f"unhandled workflow step {type(step).__name__}")

    def _apply_set_property(self, session: Session, workflow_id: uuid.UUID, trigger: _Trigger, step: SetPropertyStep) -> None:
        definition = get_definition(session, trigger.workspace_id, step.property_key)
        if definition is None:
            raise NotFoundError(f"ContactPropertyDefinition not found for key={step.property_key}")
        value = validate_property_value(definition, step.value)
        found, current = current_property_value(session, trigger.workspace_id, trigger.contact_id, step.property_key)
        changed = not (found and values_equal(current, value))
        if changed:
            append_property_value(session, trigger.workspace_id, trigger.contact_id, step.property_key, value)
        self._emit(
            session,
            workflow_id,
            trigger,
            "automation_property_updated",
            {"propertyKey": step.property_key, "value": value, "changed": changed},
        )

    def _apply_associate_company(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        trigger: _Trigger,
        step: AssociateCompanyStep,
    ) -> None:
        company = session.scalar(
            select(CRMCompany).where(
                and_(CRMCompany.id == step.company_id, CRMCompany.workspace_id == trigger.workspace_id)
            )
        )
        if company is None:
            raise NotFoundError(f"Company not found for id={step.company_id}")
        latest = latest_row(
            session,
            CRMContactCompanyAssociation,
            workspace_id=trigger.workspace_id,
            contact_id=trigger.contact_id,
            company_id=company.id,
        )
        changed = latest is None or latest.archived_at is not None
        if changed:
            append_row(
                session,
                CRMContactCompanyAssociation,
                workspace_id=trigger.workspace_id,
                contact_id=trigger.contact_id,
                company_id=company.id,
                role=step.role,
                is_primary=False,
            )
        self._emit(
            session,
            workflow_id,
            trigger,
            "automation_company_associated",
            {"companyId": company.id, "role": step.role, "changed": changed},
        )

    def _record_outcome(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        trigger: _Trigger,
        status: str,
        payload: dict[str, Any],
        *,
        error: str | None = None,
    ) -> CRMWorkflowExecution | None:
        activity_type = f"automation_execution_{status}"
        try:
            with unit_of_work(session):
                execution = self._insert_execution(session, workflow_id, trigger, status, error=error)
                self._emit(session, workflow_id, trigger, activity_type, payload)
        except IntegrityError:
            logger.info(
                "automation.execution_deduplicated",
                extra={"workflow_id": str(workflow_id), "activity_id": str(trigger.id), "status": status},
            )
            return self._find_execution(session, workflow_id, trigger.id)

        if status == "skipped":
            observe_workflow_execution(status, 0.0)
            logger.info(
                "automation.execution_skipped",
                extra={"workflow_id": str(workflow_id), "activity_id": str(trigger.id), "reason": payload.get("reason")},
            )
        return execution

    def _insert_execution(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        trigger: _Trigger,
        status: str,
        *,
        error: str | None = None,
    ) -> CRMWorkflowExecution:
        execution = CRMWorkflowExecution(
            workspace_id=trigger.workspace_id,
            workflow_id=workflow_id,
            activity_id=trigger.id,
            contact_id=trigger.contact_id,
            status=status,
            idempotency_key=idempotency_key(workflow_id, trigger.id),
            error=error[:2000] if error else None,
            executed_at=ledger_now(),
        )
        session.add(execution)
        session.flush()
        return execution

    def _emit(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        trigger: _Trigger,
        activity_type: str,
        payload: dict[str, Any],
    ) -> CRMActivity:
        return emit_activity(
            session,
            workspace_id=trigger.workspace_id,
            contact_id=trigger.contact_id,
            type=activity_type,
            subtype="system",
            actor_user_id=AUTOMATION_ACTOR,
            payload={"workflowId": workflow_id, "triggerActivityId": trigger.id, **payload},
        )

    def _find_execution(
        self,
        session: Session,
        workflow_id: uuid.UUID,
        activity_id: uuid.UUID,
    ) -> CRMWorkflowExecution | None:
        return session.scalar(
            select(CRMWorkflowExecution).where(
                and_(
                    CRMWorkflowExecution.workflow_id == workflow_id,
                    CRMWorkflowExecution.activity_id == activity_id,
                )
            )
        )


class AutomationEngine:
    """Owned polling scheduler. ``start()`` runs ``tick()`` on a daemon thread until ``stop()``."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        config: AutomationConfig | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or AutomationConfig.from_settings()
        self.executor = WorkflowExecutor(sleep=sleep)
        self.watermark: datetime = clock() - timedelta(milliseconds=self.config.initial_lookback_ms)
        self._lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_started(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_started:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="eventcrm-automation", daemon=True)
        self._thread.start()
        logger.info(
            "automation.started",
            extra={"batch_size": self.config.batch_size, "watermark": isoformat_z(self.watermark)},
        )

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
        logger.info("automation.stopped", extra={"watermark": isoformat_z(self.watermark)})

    def _run(self) -> None:
        interval = self.config.poll_interval_ms / 1000
        while not self._stop_event.wait(interval):
            self.tick()

    def tick(self) -> int:
        """Poll once; returns how many triggering Activities were considered."""
        with self._lock:
            if self._running:
                logger.info("automation.tick_skipped")
                observe_automation_tick("skipped")
                return 0
            self._running = True

        token = set_actor_user_id(AUTOMATION_ACTOR)
        try:
            with tracer.start_as_current_span("automation.tick") as span:
                processed = self._process_batch()
                span.set_attribute("processed", processed)
            observe_automation_tick("ok")
            if processed:
                logger.info(
                    "automation.tick_completed",
                    extra={"processed": processed, "watermark": isoformat_z(self.watermark)},
                )
            return processed
        except Exception as exc:
            logger.exception("automation.tick_failed", extra={"error": str(exc)})
            observe_automation_tick("failed")
            return 0
        finally:
            reset_actor_user_id(token)
            with self._lock:
                self._running = False

    def _process_batch(self) -> int:
        session = self.session_factory()
        try:
            rows = session.scalars(
                select(CRMActivity)
                .where(
                    and_(
                        CRMActivity.created_at > self.watermark,
                        CRMActivity.type.in_(sorted(TRIGGER_TYPES)),
                    )
                )
                .order_by(CRMActivity.created_at.asc(), CRMActivity.id.asc())
                .limit(self.config.batch_size)
            ).all()
            triggers = [
                _Trigger(
                    id=row.id,
                    workspace_id=row.workspace_id,
                    contact_id=row.contact_id,
                    type=row.type,
                    created_at=row.created_at,
                )
                for row in rows
            ]
            session.rollback()

            for trigger in triggers:
                # The watermark moves before execution; a seen activity is never re-offered by this engine.
                self.watermark = trigger.created_at
                for workflow_id in self._matching_workflow_ids(session, trigger):
                    try:
                        self.executor.execute(session, workflow_id, trigger.id)
                    except Exception as exc:
                        session.rollback()
                        logger.exception(
                            "automation.execution_error",
                            extra={"workflow_id": str(workflow_id), "activity_id": str(trigger.id), "error": str(exc)},
                        )
            return len(triggers)
        finally:
            session.close()

    def _matching_workflow_ids(self, session: Session, trigger: _Trigger) -> list[uuid.UUID]:
        workflows = session.scalars(
            select(CRMWorkflow)
            .where(
                and_(
                    CRMWorkflow.workspace_id == trigger.workspace_id,
                    CRMWorkflow.enabled.is_(True),
                    CRMWorkflow.archived_at.is_(None),
                )
            )
            .order_by(CRMWorkflow.created_at.asc(), CRMWorkflow.id.asc())
        ).all()
        matched = [workflow.id for workflow in workflows if trigger.type in (workflow.trigger_types or [])]
        session.rollback()
        return matched
