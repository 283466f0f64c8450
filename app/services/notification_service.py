from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


def send_push_notification(recipient_id: str, title: str, body: str, data: dict) -> None:
    """Push delivery stub, logs only. Device tokens and delivery belong to the
    platform push service; wire its client in here."""
    logger.info("PUSH [%s]: %s: %s | data=%s", recipient_id, title, body, data)
