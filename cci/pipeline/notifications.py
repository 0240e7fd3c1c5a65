# cci/pipeline/notifications.py
import logging
from typing import Any, Dict

logger = logging.getLogger(__name__)


class Notifier:
    """Delivery is owned by the messaging service; the claims core only hands over a template kind and payload."""

    async def notify(self, user_id: str, template_kind: str, payload: Dict[str, Any]):
        raise NotImplementedError


class LogNotifier(Notifier):
    async def notify(self, user_id: str, template_kind: str, payload: Dict[str, Any]):
        logger.info("[Notify] %s -> user %s: %s", template_kind, user_id, payload.get("message", ""))
