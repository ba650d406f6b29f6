"""
Best-effort notification service.
Delivery transports (email, chat) live outside the marketplace core; this
module only guarantees that a failing transport never reaches the caller.
"""

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)


class NotificationTemplate(Enum):
    NEW_APPLICATION = "new_application"
    APPLICATION_APPROVED = "application_approved"
    APPLICATION_REJECTED = "application_rejected"
    DEPOSIT_TIMEOUT = "deposit_timeout"
    ORDER_UNASSIGNED_TIMEOUT = "order_unassigned_timeout"
    ORDER_NOT_STARTED_TIMEOUT = "order_not_started_timeout"
    ORDER_DEADLINE_PASSED = "order_deadline_passed"
    GHOST_EDITOR_CANCELLED = "ghost_editor_cancelled"
    COMMUNICATION_GAP = "communication_gap"
    REVISION_REQUESTED = "revision_requested"
    DISPUTE_RAISED = "dispute_raised"
    PAYMENT_RELEASED = "payment_released"
    WITHDRAWAL_PROCESSED = "withdrawal_processed"
    ORDER_CANCELLED = "order_cancelled"


class NotificationSender(ABC):
    """Transport boundary; implementations may raise on delivery failure"""

    @abstractmethod
    def send(self, recipients: List[int], template: str, data: Dict[str, Any]) -> None:
        ...


class LoggingNotificationSender(NotificationSender):
    """Writes notifications to the log; used when no transport is configured"""

    def send(self, recipients: List[int], template: str, data: Dict[str, Any]) -> None:
        logger.info(f"📧 NOTIFY {template} -> users {recipients}: {data}")


class NotificationService:
    """
    Wraps a NotificationSender so callers can fire notifications after a
    commit without ever seeing a delivery error.
    """

    def __init__(self, sender: Optional[NotificationSender] = None):
        self.sender = sender or LoggingNotificationSender()

    def notify(
        self,
        recipients: Union[int, Iterable[Optional[int]]],
        template: Union[NotificationTemplate, str],
        data: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Send a notification, best effort.

        Args:
            recipients: user id or ids; ``None`` entries are dropped
            template: template identifier
            data: template variables

        Returns:
            True if the sender accepted the message, False otherwise
        """
        if isinstance(recipients, int):
            recipients = [recipients]
        user_ids = [user_id for user_id in recipients if user_id is not None]
        template_name = template.value if isinstance(template, NotificationTemplate) else str(template)

        if not user_ids:
            logger.debug(f"No recipients for notification {template_name}, skipping")
            return False

        try:
            self.sender.send(user_ids, template_name, dict(data or {}))
            return True
        except Exception as e:
            logger.error(f"❌ NOTIFICATION_FAILED: {template_name} to {user_ids}: {e}")
            return False
