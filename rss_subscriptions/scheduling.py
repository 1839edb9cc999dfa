"""Fetch scheduling for newly created or reactivated subscriptions."""

from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchRequest:
    """One feed fetch to run for one subscription."""

    user_id: str
    subscription_id: str
    url: str
    scheduled_at: datetime
    fetched_at: Optional[datetime] = None
    checksum: Optional[str] = None
    add_to_library: bool = False


class FetchScheduler(Protocol):
    """Accepts fetch requests for asynchronous processing."""

    def enqueue(self, requests: Sequence[FetchRequest]) -> None:
        """Queue the requests; the return value is never inspected."""


class QueueFetchScheduler:
    """Hands fetch requests to a worker through an in-process queue."""

    def __init__(self, target: Optional[queue.Queue] = None):
        self.queue: queue.Queue = target if target is not None else queue.Queue()

    def enqueue(self, requests: Sequence[FetchRequest]) -> None:
        for request in requests:
            logger.info(
                "Scheduled fetch of %s for subscription %s at %s",
                request.url,
                request.subscription_id,
                request.scheduled_at.isoformat(),
            )
            self.queue.put_nowait(request)

    def drain(self) -> List[FetchRequest]:
        """Remove and return everything queued so far."""
        drained = []
        while True:
            try:
                drained.append(self.queue.get_nowait())
            except queue.Empty:
                return drained
