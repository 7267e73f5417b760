"""
Deferred tenant notifications.

Status transitions are handed to a Notifier through FastAPI background tasks
after the response is sent. Delivery (email, chat) belongs to the notifier
implementation; the default one only logs.
"""

from dataclasses import dataclass
from typing import Protocol

from fastapi import BackgroundTasks

from credit_ledger.models.api import AccountStatus
from credit_ledger.observability.logging import get_logger

logger = get_logger(__name__)

# Transitions into these statuses are worth telling the tenant about
NOTIFY_ON = frozenset(
    {
        AccountStatus.WARNING,
        AccountStatus.EXHAUSTED,
        AccountStatus.PAST_DUE,
        AccountStatus.CANCELED,
    }
)


@dataclass(frozen=True)
class StatusNotification:
    """A tenant's account moved to a status that needs attention."""

    tenant_id: str
    previous_status: AccountStatus
    new_status: AccountStatus
    reason: str


class Notifier(Protocol):
    """Out-of-band delivery of tenant notifications."""

    async def send(self, notification: StatusNotification) -> None:
        """Deliver one notification."""
        ...


class LogNotifier:
    """Notifier that records the notification in the structured log."""

    async def send(self, notification: StatusNotification) -> None:
        logger.info(
            "notification_queued",
            tenant_id=notification.tenant_id,
            previous_status=notification.previous_status.value,
            new_status=notification.new_status.value,
            reason=notification.reason,
        )


async def _deliver(notifier: Notifier, notification: StatusNotification) -> None:
    try:
        await notifier.send(notification)
    except Exception as e:
        # Runs after the response; nothing upstream can handle it
        logger.error(
            "notification_failed",
            tenant_id=notification.tenant_id,
            new_status=notification.new_status.value,
            error=str(e),
        )


def status_notification(
    tenant_id: str,
    previous: AccountStatus | None,
    current: AccountStatus | None,
    reason: str,
) -> StatusNotification | None:
    """Build a notification for a status transition, or None if it is not notable."""
    if previous is None or current is None or previous == current:
        return None
    if current not in NOTIFY_ON:
        return None
    return StatusNotification(
        tenant_id=tenant_id, previous_status=previous, new_status=current, reason=reason
    )


def schedule_status_notification(
    background_tasks: BackgroundTasks,
    notifier: Notifier,
    tenant_id: str,
    previous: AccountStatus | None,
    current: AccountStatus | None,
    reason: str,
) -> bool:
    """Queue a notification for after the response; returns True if one was queued."""
    notification = status_notification(tenant_id, previous, current, reason)
    if notification is None:
        return False
    background_tasks.add_task(_deliver, notifier, notification)
    return True
