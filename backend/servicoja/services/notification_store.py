import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional
from uuid import uuid4

from servicoja.models import NotificationRecord
from servicoja.services.push_sender import push_sender

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS_PER_QUERY = 100

CATEGORY_TITLES = {
    "order": "Atualização de pedido",
    "message": "Nova mensagem",
    "account": "A sua conta",
    "system": "ServiçoJá",
}


class NotificationStore:
    """In-memory inbox for order, message and account events, mirrored to push.

    ``device_data`` travels only in the push payload and is never kept in the
    feed, so secrets such as password-reset tokens reach the user's devices
    without being readable through the API.
    """

    def __init__(self):
        self._lock = Lock()
        self._notifications: List[NotificationRecord] = []
        self._device_tokens: Dict[str, set[str]] = {}

    def register_device_token(self, user_id: str, device_token: str) -> bool:
        token = device_token.strip()
        if not token:
            return False
        with self._lock:
            self._device_tokens.setdefault(user_id, set()).add(token)
        return True

    def device_tokens(self, user_id: str) -> List[str]:
        with self._lock:
            return sorted(self._device_tokens.get(user_id, set()))

    def create(
        self,
        user_id: str,
        title: str,
        body: str,
        category: str = "system",
        deep_link: Optional[str] = None,
        device_data: Optional[Dict[str, str]] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=user_id,
            title=title.strip() or CATEGORY_TITLES.get(category, CATEGORY_TITLES["system"]),
            body=body,
            category=category,  # type: ignore[arg-type]
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            self._notifications.insert(0, record)
            tokens = list(self._device_tokens.get(user_id, set()))
        payload = {
            "notification_id": record.id,
            "category": category,
            "deep_link": deep_link or "",
        }
        payload.update(device_data or {})
        invalid_tokens = push_sender.send_notification(
            tokens=tokens,
            title=record.title,
            body=body,
            data=payload,
        )
        if invalid_tokens:
            logger.info("Dropping %d stale device tokens for user_id=%s", len(invalid_tokens), user_id)
            with self._lock:
                current = self._device_tokens.get(user_id, set())
                for token in invalid_tokens:
                    current.discard(token)
        return record

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        category: Optional[str] = None,
    ) -> List[NotificationRecord]:
        with self._lock:
            rows = [n for n in self._notifications if n.user_id == user_id]
        if unread_only:
            rows = [n for n in rows if not n.read]
        if category:
            rows = [n for n in rows if n.category == category]
        return rows[:MAX_NOTIFICATIONS_PER_QUERY]

    def unread_counts(self, user_id: str) -> Dict[str, int]:
        counts = {name: 0 for name in CATEGORY_TITLES}
        with self._lock:
            for row in self._notifications:
                if row.user_id == user_id and not row.read:
                    counts[row.category] = counts.get(row.category, 0) + 1
        return counts

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.id == notification_id and row.user_id == user_id:
                    updated = row.model_copy(update={"read": True})
                    self._notifications[idx] = updated
                    return updated
        return None

    def mark_all_read(self, user_id: str, category: Optional[str] = None) -> int:
        updated = 0
        with self._lock:
            for idx, row in enumerate(self._notifications):
                if row.user_id != user_id or row.read:
                    continue
                if category and row.category != category:
                    continue
                self._notifications[idx] = row.model_copy(update={"read": True})
                updated += 1
        return updated


notification_store = NotificationStore()
