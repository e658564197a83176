from app.business.notifications.api import router
from app.business.notifications.email import (
    EmailClient,
    EmailMessage,
    HttpEmailClient,
    RecordingEmailClient,
    get_email_client,
)
from app.business.notifications.models import EmailDigestItem, Notification, NotificationPreferences
from app.business.notifications.service import (
    PREFERENCE_FLAGS,
    DispatchResult,
    EmailContent,
    NotificationDispatcher,
    Recipient,
    notification_dispatcher,
)

__all__ = [
    "router",
    "EmailClient",
    "EmailMessage",
    "HttpEmailClient",
    "RecordingEmailClient",
    "get_email_client",
    "EmailDigestItem",
    "Notification",
    "NotificationPreferences",
    "PREFERENCE_FLAGS",
    "DispatchResult",
    "EmailContent",
    "NotificationDispatcher",
    "Recipient",
    "notification_dispatcher",
]
