"""Analytics event tracking."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional, Protocol

logger = logging.getLogger("rss_subscriptions.events")


class EventTracker(Protocol):
    def track(
        self, user_id: str, event: str, properties: Optional[Mapping[str, Any]] = None
    ) -> None:
        """Record an event; delivery is best effort."""


class LoggingTracker:
    """Writes analytics events to the ``rss_subscriptions.events`` logger."""

    def __init__(self, environment: str = "local"):
        self.environment = environment

    def track(
        self, user_id: str, event: str, properties: Optional[Mapping[str, Any]] = None
    ) -> None:
        payload = dict(properties or {})
        payload["env"] = self.environment
        logger.info("event=%s user=%s properties=%s", event, user_id, payload)
