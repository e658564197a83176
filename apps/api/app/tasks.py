"""Celery entry points for scheduled work and out-of-request automation runs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy.orm import Session

from app.business.notifications.service import notification_dispatcher
from app.business.requests.service import request_service
from app.business.workflows.service import workflow_automation_service
from app.context import reset_correlation_id, set_correlation_id
from app.core.celery_app import celery_app
from app.core.database import SessionLocal
from app.metrics import observe_scheduled_task


logger = logging.getLogger("app.tasks")

T = TypeVar("T")


def run_in_session(task_name: str, work: Callable[[Session], T]) -> T:
    session = SessionLocal()
    try:
        result = work(session)
    except Exception as exc:
        session.rollback()
        observe_scheduled_task(task_name, "failed")
        logger.exception("task.failed", extra={"task": task_name, "error": str(exc)[:500]})
        raise
    finally:
        session.close()
    observe_scheduled_task(task_name, "success")
    logger.info("task.completed", extra={"task": task_name, "count": result if isinstance(result, int) else None})
    return result


@celery_app.task(name="app.tasks.due_date_tick")
def due_date_tick() -> int:
    return run_in_session("due_date_tick", workflow_automation_service.run_due_date_tick)


@celery_app.task(name="app.tasks.sla_sweep")
def sla_sweep() -> int:
    return run_in_session("sla_sweep", request_service.refresh_sla_statuses)


@celery_app.task(name="app.tasks.send_daily_digests")
def send_daily_digests() -> int:
    return run_in_session("send_daily_digests", lambda session: notification_dispatcher.send_digests(session, "daily"))


@celery_app.task(name="app.tasks.send_weekly_digests")
def send_weekly_digests() -> int:
    return run_in_session("send_weekly_digests", lambda session: notification_dispatcher.send_digests(session, "weekly"))


@celery_app.task(name="app.tasks.archive_completed_requests")
def archive_completed_requests() -> int:
    return run_in_session("archive_completed_requests", request_service.archive_completed)


@celery_app.task(name="app.tasks.run_workflow_event")
def run_workflow_event(envelope: dict[str, Any]) -> int:
    token = set_correlation_id(envelope.get("correlation_id"))
    try:
        executions = run_in_session(
            "run_workflow_event",
            lambda session: workflow_automation_service.handle_event(session, envelope),
        )
    finally:
        reset_correlation_id(token)
    return len(executions)
