"""Cross-cutting classification of every failure signal."""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from .events import EventBus
from .models import FailureEvent

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    AUTH = "auth"
    NETWORK = "network"
    SERVER = "server"
    UNKNOWN = "unknown"


# Checked in this order; the first matching kind wins.
ERROR_PATTERNS = [
    (
        ErrorKind.AUTH,
        ("401", "unauthorized", "token", "authentication failed", "forbidden"),
    ),
    (
        ErrorKind.NETWORK,
        ("network", "failed to fetch", "fetch failed", "err_internet_disconnected", "net::",
         "cannot connect", "connection"),
    ),
    (
        ErrorKind.SERVER,
        ("500", "502", "503", "504", "server error"),
    ),
]


@dataclass
class ClassifiedError:
    """A failure after classification."""

    kind: ErrorKind
    message: str
    source: str
    request_id: Optional[str] = None
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.utcnow()


class ErrorClassifier:
    """Observes the failure bus and applies policy independent of the failing phase.

    Auth failures force a logout; network and server failures are only
    recorded.
    """

    def __init__(self, on_auth_failure: Optional[Callable[[], None]] = None):
        self.on_auth_failure = on_auth_failure
        self.history: List[ClassifiedError] = []
        self.counts: Counter = Counter()

    @staticmethod
    def classify(message: str) -> ErrorKind:
        lowered = (message or "").lower()
        for kind, patterns in ERROR_PATTERNS:
            if any(pattern in lowered for pattern in patterns):
                return kind
        return ErrorKind.UNKNOWN

    def attach(self, bus: EventBus):
        """Subscribe once to the failure bus."""
        bus.subscribe(self.handle)

    def handle(self, event: FailureEvent) -> ClassifiedError:
        kind = self.classify(event.message)
        # an HTTP status is more reliable than the message text
        if kind is ErrorKind.UNKNOWN and event.status is not None:
            if event.status in (401, 403):
                kind = ErrorKind.AUTH
            elif event.status >= 500:
                kind = ErrorKind.SERVER

        classified = ClassifiedError(
            kind=kind,
            message=event.message,
            source=event.source,
            request_id=event.request_id,
        )
        self.history.append(classified)
        self.counts[kind] += 1
        logger.info(f"{kind.value} error from {event.source}: {event.message}")

        if kind is ErrorKind.AUTH:
            logger.warning("Authentication error detected, logging out")
            if self.on_auth_failure:
                self.on_auth_failure()

        return classified
