import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusEvent:
    request_id: str
    event_type: str
    payload: str
    created_at: datetime


Subscriber = Callable[[StatusEvent], None]


class EventBus:
    """Fan-out of status document changes, keyed by request id.

    Subscribers may register before the document exists; they simply receive
    the creation event when it happens.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._keyed: Dict[str, List[Subscriber]] = {}

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def subscribe_to(self, request_id: str, subscriber: Subscriber) -> Callable[[], None]:
        bucket = self._keyed.setdefault(request_id, [])
        bucket.append(subscriber)

        def _unsubscribe() -> None:
            current = self._keyed.get(request_id) or []
            kept = [s for s in current if s is not subscriber]
            if kept:
                self._keyed[request_id] = kept
            else:
                self._keyed.pop(request_id, None)

        return _unsubscribe

    def publish(self, request_id: str, event_type: str, payload: str = "") -> StatusEvent:
        event = StatusEvent(
            request_id=request_id,
            event_type=event_type,
            payload=payload,
            created_at=datetime.now(timezone.utc),
        )
        for subscriber in list(self._subscribers) + list(self._keyed.get(request_id) or []):
            try:
                subscriber(event)
            except Exception:
                logger.exception("status subscriber failed for %s", request_id)
        return event
