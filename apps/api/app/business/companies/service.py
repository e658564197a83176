from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.business.companies.models import Company, UserProfile
from app.business.companies.plans import effective_active_limit
from app.business.companies.repository import CompanyRepository, UserProfileRepository
from app.business.companies.schemas import (
    CompanyCapacityRead,
    CompanyCreate,
    CompanyRead,
    CompanyUpdate,
    UserProfileCreate,
    UserProfileRead,
)
from app.business.requests.admission import AdmissionController, admission_controller
from app.core.errors import DomainValidationError, NotFoundError, PermissionDeniedError
from app.platform.repository import Predicate
from app.platform.security import AuthContext, can_access_company
from app.services.audit import write_audit_log


logger = logging.getLogger("app.companies")

MANAGE_PERMISSION = "companies.manage"


class CompanyService:
    entity_type = "company"

    def __init__(self, admission: AdmissionController | None = None) -> None:
        self.company_repository = CompanyRepository()
        self.profile_repository = UserProfileRepository()
        self.admission = admission or admission_controller

    def create_company(self, session: Session, ctx: AuthContext, payload: CompanyCreate) -> CompanyRead:
        self._require_manage(ctx)
        company = Company(**payload.model_dump())
        try:
            self.company_repository.add(session, company)
            write_audit_log(
                session,
                ctx.user_id,
                "company.created",
                "company",
                company.id,
                company_id=company.id,
                metadata={"plan_tier": company.plan_tier, "status": company.status},
                correlation_id=ctx.correlation_id,
            )
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DomainValidationError("company with this external customer id already exists")
        session.refresh(company)
        logger.info("company.created", extra={"company_id": str(company.id), "status": company.status})
        return self._to_company_read(company)

    def list_companies(self, session: Session, ctx: AuthContext, *, status_filter: str | None = None) -> list[CompanyRead]:
        predicates = [Predicate("status", "eq", status_filter)] if status_filter else []
        if not ctx.is_staff:
            predicates.append(Predicate("id", "eq", ctx.company_id))
        companies = self.company_repository.find(session, predicates, order_by=["name"])
        return [self._to_company_read(company) for company in companies]

    def get_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> CompanyRead:
        return self._to_company_read(self._load_company(session, ctx, company_id))

    def update_company(
        self,
        session: Session,
        ctx: AuthContext,
        company_id: uuid.UUID,
        payload: CompanyUpdate,
    ) -> CompanyRead:
        self._require_manage(ctx)
        company = self._load_company(session, ctx, company_id)
        changes = payload.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] is None:
            raise DomainValidationError("name cannot be empty")
        if "status" in changes and changes["status"] is None:
            raise DomainValidationError("status cannot be empty")
        if "plan_tier" in changes and changes["plan_tier"] is None:
            raise DomainValidationError("plan_tier cannot be empty")

        before = {field_name: getattr(company, field_name) for field_name in changes}
        self.company_repository.update(session, company, changes)
        write_audit_log(
            session,
            ctx.user_id,
            "company.updated",
            "company",
            company.id,
            company_id=company.id,
            metadata={"before": before, "after": changes},
            correlation_id=ctx.correlation_id,
        )
        session.commit()
        session.refresh(company)
        return self._to_company_read(company)

    def apply_external_status(
        self,
        session: Session,
        *,
        external_customer_id: str,
        status: str,
        plan_tier: str | None = None,
        name: str | None = None,
    ) -> CompanyRead:
        """Record a "company state changed" notice from billing sync; creates the company on first sight."""
        if status not in {"active", "paused", "churned"}:
            raise DomainValidationError(f"unknown company status '{status}'")
        if plan_tier is not None:
            effective_active_limit(plan_tier, None)

        company = self.company_repository.get_by_external_id(session, external_customer_id)
        action = "company.synced"
        if company is None:
            company = Company(
                name=name or f"Customer {external_customer_id}",
                external_customer_id=external_customer_id,
                status=status,
                plan_tier=plan_tier or "standard",
            )
            self.company_repository.add(session, company)
            action = "company.onboarded"
        else:
            values: dict[str, object] = {"status": status}
            if plan_tier is not None:
                values["plan_tier"] = plan_tier
            self.company_repository.update(session, company, values)

        write_audit_log(
            session,
            "billing-sync",
            action,
            "company",
            company.id,
            company_id=company.id,
            metadata={"external_customer_id": external_customer_id, "status": status, "plan_tier": plan_tier},
        )
        session.commit()
        session.refresh(company)
        return self._to_company_read(company)

    def get_capacity(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> CompanyCapacityRead:
        company = self._load_company(session, ctx, company_id)
        decision = self.admission.evaluate(session, company)
        return CompanyCapacityRead(
            company_id=company.id,
            plan_tier=company.plan_tier,
            limit=decision.limit,
            active_count=decision.active_count,
            available=decision.available,
        )

    def create_profile(self, session: Session, ctx: AuthContext, payload: UserProfileCreate) -> UserProfileRead:
        self._require_manage(ctx)
        if payload.company_id is not None:
            self._load_company(session, ctx, payload.company_id)
        profile = UserProfile(**payload.model_dump())
        try:
            self.profile_repository.add(session, profile)
            session.commit()
        except IntegrityError:
            session.rollback()
            raise DomainValidationError("a profile with this email already exists")
        session.refresh(profile)
        return UserProfileRead.model_validate(profile)

    def list_members(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> list[UserProfileRead]:
        self._load_company(session, ctx, company_id)
        profiles = self.profile_repository.find(
            session,
            [Predicate("company_id", "eq", company_id)],
            order_by=["email"],
        )
        return [UserProfileRead.model_validate(profile) for profile in profiles]

    def _load_company(self, session: Session, ctx: AuthContext, company_id: uuid.UUID) -> Company:
        company = self.company_repository.get(session, company_id)
        if company is None or not can_access_company(ctx, company.id):
            raise NotFoundError("company not found")
        return company

    @staticmethod
    def _require_manage(ctx: AuthContext) -> None:
        if not ctx.has(MANAGE_PERMISSION):
            raise PermissionDeniedError(f"Missing permission: {MANAGE_PERMISSION}")

    @staticmethod
    def _to_company_read(company: Company) -> CompanyRead:
        read = CompanyRead.model_validate(company)
        read.effective_active_limit = effective_active_limit(company.plan_tier, company.max_active_limit)
        return read


company_service = CompanyService()
