from typing import Optional

import requests
import structlog

import config

logger = structlog.get_logger(__name__)

STEP_CREATED = "stepCreated"
APPROVED = "approved"
REJECTED = "rejected"


class NotificationDispatcher:
    """Best-effort workflow notifications.

    Every event is logged. When a webhook URL is configured the event is also
    POSTed there as JSON; delivery failures are logged and dropped.
    """

    def __init__(self, webhook_url: Optional[str] = config.NOTIFY_WEBHOOK_URL, timeout: float = 5.0, session=None):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.http = session or requests.Session()

    def notify(self, event: str, recipient_id: int, expense_id: int, **details):
        payload = {"event": event, "recipient_id": recipient_id, "expense_id": expense_id, **details}
        logger.info("notification", **payload)
        if not self.webhook_url:
            return
        try:
            resp = self.http.post(self.webhook_url, json=payload, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("notification_delivery_failed", event=event, expense_id=expense_id, error=str(exc))
