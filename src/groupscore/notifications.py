"""
Outbound notification delivery.

Delivery is fire-and-forget: failures are logged and never reach the code
that produced the event.
"""
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import NotificationConfig, config
from .models import NotificationEvent

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Custom exception for notification delivery errors."""
    pass


class NotificationClient:
    """Webhook client for the notification service with bounded retries."""

    def __init__(self, notification_config: Optional[NotificationConfig] = None):
        settings = notification_config or config.notification
        self.webhook_url = settings.webhook_url
        self.timeout = settings.timeout
        self.max_retries = settings.max_retries

        self.session = requests.Session()
        retry_strategy = Retry(
            total=self.max_retries,
            backoff_factor=settings.backoff_factor,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        self.session.mount("http://", adapter)
        self.session.mount("https://", adapter)

        if settings.api_key:
            self.session.headers.update({"Authorization": f"ApiKey {settings.api_key}"})

    def send(self, event: NotificationEvent) -> dict:
        """Post an event to the notification webhook."""
        if not self.webhook_url:
            raise NotificationError("No notification webhook configured")

        try:
            response = self.session.post(
                self.webhook_url,
                json=event.model_dump(mode="json"),
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json() if response.content else {}

        except requests.exceptions.RequestException as e:
            logger.error(f"Notification request failed: {e}")
            raise NotificationError(f"Notification request failed: {e}")


class NotificationDispatcher:
    """Hands events to a sender on a background worker, with a bounded backlog."""

    def __init__(self, sender=None, max_attempts: int = 2, retry_delay: float = 1.0,
                 executor: Optional[ThreadPoolExecutor] = None, max_pending: int = 100):
        self.sender = sender
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.max_pending = max(1, max_pending)
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="notify")
        self._pending = 0
        self._pending_lock = threading.Lock()

    @property
    def pending(self) -> int:
        with self._pending_lock:
            return self._pending

    def dispatch(self, event: NotificationEvent) -> Optional[Future]:
        """Queue an event for delivery. Never raises; drops the event when the backlog is full."""
        if self.sender is None:
            logger.debug(f"No notification sender configured; dropping {event.type.value} event")
            return None

        with self._pending_lock:
            if self._pending >= self.max_pending:
                logger.warning(f"{self._pending} notifications pending; dropping {event.type.value} "
                               f"event for user {event.subject_user_id}")
                return None
            self._pending += 1

        try:
            future = self.executor.submit(self._deliver, event)
        except RuntimeError as e:
            self._release()
            logger.error(f"Could not queue {event.type.value} notification: {e}")
            return None

        future.add_done_callback(self._release)
        return future

    def _release(self, future: Optional[Future] = None):
        with self._pending_lock:
            self._pending -= 1

    def _deliver(self, event: NotificationEvent) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.sender.send(event)
                logger.info(f"Delivered {event.type.value} notification for user {event.subject_user_id}")
                return True
            except Exception as e:
                logger.warning(f"Notification attempt {attempt}/{self.max_attempts} failed: {e}")
                if attempt < self.max_attempts:
                    time.sleep(self.retry_delay)

        logger.error(f"Giving up on {event.type.value} notification for user {event.subject_user_id}")
        return False

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)


def build_dispatcher(notification_config: Optional[NotificationConfig] = None) -> NotificationDispatcher:
    """Dispatcher wired to the webhook client when a webhook URL is configured."""
    settings = notification_config or config.notification
    sender = NotificationClient(settings) if settings.webhook_url else None
    return NotificationDispatcher(sender=sender, max_pending=settings.max_pending)
