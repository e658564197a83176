from __future__ import annotations

import uuid
from collections.abc import Iterable

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.business.companies.models import Company, UserProfile
from app.platform.repository import BaseRepository


class CompanyRepository(BaseRepository):
    resource = "companies.company"
    model = Company

    def get_by_external_id(self, session: Session, external_customer_id: str) -> Company | None:
        return session.scalar(select(Company).where(Company.external_customer_id == external_customer_id))


class UserProfileRepository(BaseRepository):
    resource = "companies.user_profile"
    model = UserProfile

    def get_many(self, session: Session, profile_ids: Iterable[uuid.UUID]) -> list[UserProfile]:
        ids = list(dict.fromkeys(profile_ids))
        if not ids:
            return []
        return list(session.scalars(select(UserProfile).where(UserProfile.id.in_(ids))))

    def find_request_recipients(
        self,
        session: Session,
        company_id: uuid.UUID,
        assignee_id: uuid.UUID | None,
        extra_ids: Iterable[uuid.UUID] = (),
    ) -> list[UserProfile]:
        """Assignee first, then the company's admins, then explicitly named profiles; no duplicates."""
        conditions = [(UserProfile.company_id == company_id) & (UserProfile.role == "admin")]
        if assignee_id is not None:
            conditions.append(UserProfile.id == assignee_id)
        extra = list(extra_ids)
        if extra:
            conditions.append(UserProfile.id.in_(extra))

        profiles = list(session.scalars(select(UserProfile).where(or_(*conditions)).order_by(UserProfile.created_at)))
        profiles.sort(key=lambda profile: 0 if profile.id == assignee_id else 1)
        return profiles

    def find_by_emails(
        self,
        session: Session,
        emails: Iterable[str],
        *,
        company_id: uuid.UUID | None,
    ) -> list[UserProfile]:
        """Profiles with the given addresses that belong to ``company_id`` or to agency staff."""
        addresses = [email.lower() for email in dict.fromkeys(emails)]
        if not addresses:
            return []
        query = select(UserProfile).where(func.lower(UserProfile.email).in_(addresses))
        return list(
            session.scalars(query.where(or_(UserProfile.company_id == company_id, UserProfile.company_id.is_(None))))
        )
