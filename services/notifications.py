"""
Fire-and-forget billing notifications.

State transitions never wait on, or roll back because of, a notification:
callers build a ``Notification`` inside their transaction and hand it to the
dispatcher after commit. Delivery happens on a small thread pool and failures
are only logged.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from sqlmodel import Session

from models.models import Organization

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    PAYMENT_CONFIRMATION = "payment_confirmation"
    PAYMENT_FAILED = "payment_failed"
    CANCELED = "canceled"
    EXPIRED = "expired"
    RENEWAL_REMINDER = "renewal_reminder"
    LOW_CREDITS = "low_credits"


@dataclass
class Notification:
    kind: NotificationKind
    organization_id: str
    organization_name: Optional[str] = None
    recipient: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


def build_notification(
    session: Session,
    kind: NotificationKind,
    organization_id: str,
    **context: Any,
) -> Notification:
    organization = session.get(Organization, organization_id)
    return Notification(
        kind=kind,
        organization_id=organization_id,
        organization_name=organization.name if organization else None,
        recipient=organization.contact_email if organization else None,
        context=context,
    )


class NotificationDispatcher:
    def __init__(self, sender: Callable[[Notification], bool], max_workers: int = 2):
        self._sender = sender
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="billing-notify")

    def dispatch(self, notification: Notification) -> None:
        self._executor.submit(self._deliver, notification)

    def _deliver(self, notification: Notification) -> None:
        try:
            self._sender(notification)
        except Exception:
            logger.exception(
                "❌ Failed to deliver %s notification for org %s",
                notification.kind.value, notification.organization_id,
            )

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
