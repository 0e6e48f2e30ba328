import logging
import os
from threading import Lock
from typing import Dict, List

logger = logging.getLogger(__name__)

INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")
# FCM rejects multicast messages with more tokens than this.
MAX_TOKENS_PER_BATCH = 500
HIGH_PRIORITY_CATEGORIES = {"message", "account"}


class PushSender:
    """Firebase Cloud Messaging fan-out, enabled only when credentials are configured."""

    def __init__(self):
        self._lock = Lock()
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            credentials_path = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
            if not credentials_path:
                self._initialized = True
                self._enabled = False
                logger.info("Push delivery disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except ImportError:
                self._initialized = True
                self._enabled = False
                logger.exception("Push delivery disabled: firebase-admin is not installed")
                return

            try:
                cred = credentials.Certificate(credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push delivery initialized")
            except (ValueError, OSError):
                self._enabled = False
                logger.exception("Push delivery disabled: Firebase init failed")
            finally:
                self._initialized = True

    def _android_config(self, data: Dict[str, str]):
        category = data.get("category") or "system"
        # Chat pushes for one conversation replace each other on the device.
        collapse_key = data.get("deep_link") if category == "message" else None
        return self._messaging.AndroidConfig(
            priority="high" if category in HIGH_PRIORITY_CATEGORIES else "normal",
            collapse_key=collapse_key or None,
            notification=self._messaging.AndroidNotification(channel_id=f"servicoja_{category}"),
        )

    def send_notification(
        self,
        tokens: List[str],
        title: str,
        body: str,
        data: Dict[str, str],
    ) -> List[str]:
        """Send to every token and return the ones Firebase reports as dead."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        invalid: List[str] = []
        for start in range(0, len(tokens), MAX_TOKENS_PER_BATCH):
            chunk = tokens[start:start + MAX_TOKENS_PER_BATCH]
            try:
                message = self._messaging.MulticastMessage(
                    notification=self._messaging.Notification(title=title, body=body),
                    android=self._android_config(data),
                    tokens=chunk,
                    data=data,
                )
                batch = self._messaging.send_each_for_multicast(message)
            except Exception:
                logger.exception("Push send failed category=%s tokens=%d", data.get("category"), len(chunk))
                continue
            for idx, response in enumerate(batch.responses):
                if response.success:
                    continue
                error_text = str(response.exception).lower() if response.exception else ""
                if any(marker in error_text for marker in INVALID_TOKEN_MARKERS):
                    invalid.append(chunk[idx])
        return invalid


push_sender = PushSender()
