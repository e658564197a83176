from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.business.companies.models import Company
from app.business.companies.plans import effective_active_limit
from app.business.requests.models import Request
from app.core.errors import LimitExceededError
from app.metrics import observe_admission_denial


logger = logging.getLogger("app.requests.admission")


class CompanyLockRegistry:
    """Process-local exclusive lock per company id."""

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, company_id: uuid.UUID) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(company_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[company_id] = lock
            return lock

    @contextmanager
    def hold(self, company_id: uuid.UUID) -> Iterator[None]:
        with self.lock_for(company_id):
            yield

    def reset(self) -> None:
        with self._guard:
            self._locks.clear()


company_locks = CompanyLockRegistry()


@dataclass(frozen=True, slots=True)
class AdmissionDecision:
    allowed: bool
    active_count: int
    limit: int

    @property
    def available(self) -> int:
        return max(self.limit - self.active_count, 0)


class AdmissionController:
    def effective_limit(self, company: Company) -> int:
        return effective_active_limit(company.plan_tier, company.max_active_limit)

    def count_active(self, session: Session, company_id: uuid.UUID) -> int:
        return int(
            session.scalar(
                select(func.count())
                .select_from(Request)
                .where(Request.company_id == company_id, Request.status == "active")
            )
            or 0
        )

    def evaluate(self, session: Session, company: Company) -> AdmissionDecision:
        active_count = self.count_active(session, company.id)
        limit = self.effective_limit(company)
        return AdmissionDecision(allowed=active_count < limit, active_count=active_count, limit=limit)

    def ensure_can_activate(self, session: Session, company: Company) -> AdmissionDecision:
        """Callers must hold ``company_locks.hold(company.id)`` and write the status in the same transaction."""
        decision = self.evaluate(session, company)
        if not decision.allowed:
            observe_admission_denial()
            logger.info(
                "request.activation_denied",
                extra={
                    "company_id": str(company.id),
                    "reason": "LIMIT_EXCEEDED",
                    "count": decision.active_count,
                },
            )
            raise LimitExceededError(active_count=decision.active_count, limit=decision.limit)
        return decision


admission_controller = AdmissionController()
