import logging
from threading import Lock
from typing import List, Optional

from casematch.models import NotificationRecord
from casematch.services.database import new_id, to_iso, utcnow

logger = logging.getLogger(__name__)

MAX_INBOX_SIZE = 100


class NotificationStore:
    """In-process inbox of engine events per user.

    Delivery to devices is handled by a separate service; this store only
    keeps what the API can list and mark as read.
    """

    def __init__(self):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=new_id("ntf"),
            user_id=user_id,
            title=title,
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=to_iso(utcnow()),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            self._trim(user_id)
        logger.info("Notification queued user=%s category=%s title=%s", user_id, category, title)
        return record

    def _trim(self, user_id: str) -> None:
        # Oldest entries past the per-user cap are dropped; caller holds the lock.
        seen = 0
        retained: List[NotificationRecord] = []
        for row in self._notifications:
            if row.user_id == user_id:
                seen += 1
                if seen > MAX_INBOX_SIZE:
                    continue
            retained.append(row)
        self._notifications = retained

    def list_for_user(self, user_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
            if unread_only:
                rows = [n for n in rows if not n.read]
            return rows[:MAX_INBOX_SIZE]

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None


notification_store = NotificationStore()
