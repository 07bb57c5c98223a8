import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol
from uuid import UUID, uuid4

from .models import Notification
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class NotificationCategory:
    MANAGER_CHANGE = "manager_change"
    WITHDRAWAL_SUBMITTED = "withdrawal_submitted"
    WITHDRAWAL_ASSIGNED = "withdrawal_assigned"
    WITHDRAWAL_APPROVED = "withdrawal_approved"
    WITHDRAWAL_REJECTED = "withdrawal_rejected"
    WITHDRAWAL_PROCESSING = "withdrawal_processing"
    WITHDRAWAL_COMPLETED = "withdrawal_completed"
    WITHDRAWAL_CANCELLED = "withdrawal_cancelled"
    WITHDRAWAL_STATUS_CHANGED = "withdrawal_status_changed"
    TIER_STATUS_CHANGE = "vip_status_change"


class Notifier(Protocol):
    def notify(self, target_id: UUID, category: str, title: str, message: str, payload: Optional[dict] = None) -> None:
        ...


class InMemoryNotifier:
    def __init__(self, storage: InMemoryStorage, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.storage = storage
        self.clock = clock

    def notify(self, target_id: UUID, category: str, title: str, message: str, payload: Optional[dict] = None) -> None:
        self.storage.insert_notification({
            "id": uuid4(),
            "target_id": target_id,
            "category": category,
            "title": title,
            "message": message,
            "payload": payload or {},
            "created_at": self.clock(),
        })

    def for_target(self, target_id: UUID) -> list[Notification]:
        return [Notification(**row) for row in self.storage.notifications_for(target_id)]


class NotificationEmitter:
    """Fire-and-forget wrapper: delivery failures are logged, never raised.

    Services call it after their state change has committed, so a failing
    notifier can never undo a ledger entry or a transition.
    """

    def __init__(self, notifier: Notifier):
        self.notifier = notifier

    def emit(self, target_id: UUID, category: str, title: str, message: str, payload: Optional[dict] = None) -> bool:
        try:
            self.notifier.notify(target_id, category, title, message, payload or {})
            return True
        except Exception:
            logger.exception("Failed to deliver %s notification to %s", category, target_id)
            return False
