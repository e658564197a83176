from __future__ import annotations

import html as html_module
import logging
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Literal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.business.companies.models import UserProfile
from app.business.notifications.email import (
    EmailClient,
    EmailMessage,
    get_email_client,
    render_email_body,
)
from app.business.notifications.models import EmailDigestItem, Notification, NotificationPreferences
from app.business.notifications.schemas import NotificationRead, PreferencesRead, PreferencesUpdate
from app.core.errors import DeliveryError, DomainValidationError
from app.metrics import observe_notification_email


logger = logging.getLogger("app.notifications")

DispatchOutcome = Literal["sent", "deferred", "suppressed", "failed", "none"]

PREFERENCE_FLAGS: dict[str, str] = {
    "comment": "email_on_comment",
    "status_change": "email_on_status_change",
    "assignment": "email_on_assignment",
    "mention": "email_on_mention",
    "due_date": "email_on_due_date",
    "sla_breach": "email_on_due_date",
}

DEFAULT_PREFERENCES: dict[str, object] = {
    "email_on_comment": True,
    "email_on_status_change": True,
    "email_on_assignment": True,
    "email_on_mention": True,
    "email_on_due_date": True,
    "email_digest_enabled": False,
    "email_digest_frequency": "daily",
    "push_enabled": True,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Recipient:
    user_id: str
    email: str | None = None
    name: str | None = None

    @classmethod
    def from_profile(cls, profile: UserProfile) -> Recipient:
        return cls(user_id=str(profile.id), email=profile.email, name=profile.full_name)


@dataclass(frozen=True, slots=True)
class EmailContent:
    subject: str
    html: str
    text: str

    @classmethod
    def render(cls, subject: str, title: str, message: str, link: str | None = None) -> EmailContent:
        html, text = render_email_body(title, message, link)
        return cls(subject=subject, html=html, text=text)


@dataclass(frozen=True, slots=True)
class DispatchResult:
    notification_id: uuid.UUID
    outcome: DispatchOutcome


class NotificationDispatcher:
    """In-app notification plus preference-driven email routing.

    The in-app row is always staged; the email channel only applies when content is given and the
    recipient has an address. Nothing here commits: the caller's transaction owns the rows.
    """

    def __init__(self, email_client: EmailClient | None = None) -> None:
        self.email_client = email_client

    def dispatch(
        self,
        session: Session,
        recipient: Recipient,
        notification_type: str,
        title: str,
        message: str,
        *,
        link: str | None = None,
        request_id: uuid.UUID | None = None,
        company_id: uuid.UUID | None = None,
        email: EmailContent | None = None,
    ) -> DispatchResult:
        if notification_type not in PREFERENCE_FLAGS:
            raise DomainValidationError(f"unknown notification type '{notification_type}'")

        notification = Notification(
            user_id=recipient.user_id,
            type=notification_type,
            title=title,
            message=message,
            link=link,
            request_id=request_id,
            company_id=company_id,
        )
        session.add(notification)
        session.flush()

        outcome = self._route_email(session, recipient, notification_type, email)
        return DispatchResult(notification_id=notification.id, outcome=outcome)

    def _route_email(
        self,
        session: Session,
        recipient: Recipient,
        notification_type: str,
        email: EmailContent | None,
    ) -> DispatchOutcome:
        if email is None or not recipient.email:
            return "none"

        preferences = self.get_preferences(session, recipient.user_id)
        if not getattr(preferences, PREFERENCE_FLAGS[notification_type]):
            outcome: DispatchOutcome = "suppressed"
        elif preferences.email_digest_enabled:
            session.add(
                EmailDigestItem(
                    user_id=recipient.user_id,
                    email=recipient.email,
                    subject=email.subject,
                    html=email.html,
                    text=email.text,
                    frequency=preferences.email_digest_frequency,
                )
            )
            session.flush()
            outcome = "deferred"
        else:
            try:
                self._client().send(
                    EmailMessage(to=recipient.email, subject=email.subject, html=email.html, text=email.text)
                )
                outcome = "sent"
            except DeliveryError as exc:
                logger.warning(
                    "notification.email_failed",
                    extra={"reason": notification_type, "error": exc.message},
                )
                outcome = "failed"

        observe_notification_email(outcome)
        return outcome

    def get_preferences(self, session: Session, user_id: str) -> NotificationPreferences:
        preferences = session.scalar(select(NotificationPreferences).where(NotificationPreferences.user_id == user_id))
        if preferences is None:
            # Transient defaults; never added to the session.
            preferences = NotificationPreferences(user_id=user_id, **DEFAULT_PREFERENCES)
        return preferences

    def read_preferences(self, session: Session, user_id: str) -> PreferencesRead:
        return PreferencesRead.model_validate(self.get_preferences(session, user_id))

    def update_preferences(self, session: Session, user_id: str, payload: PreferencesUpdate) -> PreferencesRead:
        changes = {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}
        preferences = session.scalar(select(NotificationPreferences).where(NotificationPreferences.user_id == user_id))
        if preferences is None:
            preferences = NotificationPreferences(user_id=user_id, **{**DEFAULT_PREFERENCES, **changes})
            session.add(preferences)
        else:
            for key, value in changes.items():
                setattr(preferences, key, value)
        session.commit()
        session.refresh(preferences)
        return PreferencesRead.model_validate(preferences)

    def list_notifications(
        self,
        session: Session,
        user_id: str,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[NotificationRead]:
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read.is_(False))
        rows = session.scalars(query.order_by(Notification.created_at.desc()).limit(limit))
        return [NotificationRead.model_validate(row) for row in rows]

    def mark_read(self, session: Session, user_id: str, notification_ids: list[uuid.UUID] | None = None) -> int:
        """Mark the given notifications (or all when ``notification_ids`` is None) as read."""
        statement = (
            update(Notification)
            .where(Notification.user_id == user_id, Notification.is_read.is_(False))
            .values(is_read=True, read_at=utcnow())
        )
        if notification_ids is not None:
            statement = statement.where(Notification.id.in_(notification_ids))
        result = session.execute(statement.execution_options(synchronize_session=False))
        session.commit()
        return int(result.rowcount or 0)

    def send_digests(self, session: Session, frequency: str, now: datetime | None = None) -> int:
        """Send one combined email per user for pending items; returns how many users were emailed."""
        now = now or utcnow()
        items = list(
            session.scalars(
                select(EmailDigestItem)
                .where(EmailDigestItem.frequency == frequency, EmailDigestItem.sent_at.is_(None))
                .order_by(EmailDigestItem.user_id, EmailDigestItem.created_at)
            )
        )
        grouped: dict[str, list[EmailDigestItem]] = defaultdict(list)
        for item in items:
            grouped[item.user_id].append(item)

        sent_users = 0
        for user_id, user_items in grouped.items():
            message = self._digest_message(frequency, user_items)
            try:
                self._client().send(message)
            except DeliveryError as exc:
                observe_notification_email("failed")
                logger.warning(
                    "notification.digest_failed",
                    extra={"reason": frequency, "count": len(user_items), "error": exc.message},
                )
                continue
            for item in user_items:
                item.sent_at = now
            session.commit()
            observe_notification_email("sent")
            sent_users += 1

        logger.info("notification.digests_sent", extra={"reason": frequency, "count": sent_users})
        return sent_users

    @staticmethod
    def _digest_message(frequency: str, items: list[EmailDigestItem]) -> EmailMessage:
        subject = f"Your {frequency} Pipeline digest ({len(items)} update{'s' if len(items) != 1 else ''})"
        html_sections = [f"<section><h3>{html_module.escape(item.subject)}</h3>{item.html}</section>" for item in items]
        text_sections = [f"{item.subject}\n{item.text}" for item in items]
        return EmailMessage(
            to=items[0].email,
            subject=subject,
            html="<hr/>".join(html_sections),
            text="\n\n---\n\n".join(text_sections),
        )

    def _client(self) -> EmailClient:
        return self.email_client or get_email_client()


notification_dispatcher = NotificationDispatcher()
