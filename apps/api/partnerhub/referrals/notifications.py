from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from threading import Lock
from typing import Any, Protocol

from partnerhub import events
from partnerhub.core.events import InternalEvent
from partnerhub.metrics import observe_notification_failure


logger = logging.getLogger("partnerhub.referrals.notifications")

PROSPECT_APPROVED_EVENT = "referrals.prospect.approved"
PROSPECT_REJECTED_EVENT = "referrals.prospect.rejected"


class NotificationSink(Protocol):
    """Receives decided prospects after the decision has committed."""

    def on_prospect_decided(self, prospect_id: uuid.UUID, is_approved: bool) -> None:
        ...


class EventBusNotificationSink:
    """Publishes decision envelopes on the in-process event bus."""

    name = "event_bus"

    def __init__(self, publisher: Callable[[dict[str, Any]], None] = events.publish) -> None:
        self._publish = publisher

    def on_prospect_decided(self, prospect_id: uuid.UUID, is_approved: bool) -> None:
        event_type = PROSPECT_APPROVED_EVENT if is_approved else PROSPECT_REJECTED_EVENT
        self._publish(
            events.build_envelope(
                event_type,
                actor_user_id=None,
                payload={"prospect_id": str(prospect_id), "is_approved": is_approved},
            )
        )


def dispatch_decision(
    sink: NotificationSink,
    prospect_id: uuid.UUID,
    is_approved: bool,
    *,
    max_attempts: int = 1,
) -> bool:
    """Deliver at least once, retrying up to ``max_attempts``; never raises."""

    sink_name = getattr(sink, "name", type(sink).__name__)
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        try:
            sink.on_prospect_decided(prospect_id, is_approved)
            return True
        except Exception as exc:
            logger.warning(
                "referrals.notification_attempt_failed",
                extra={"prospect_id": str(prospect_id), "attempt": attempt, "error": str(exc)},
            )

    observe_notification_failure(sink_name)
    logger.error(
        "referrals.notification_dropped",
        extra={"prospect_id": str(prospect_id), "attempt": attempts},
    )
    return False


class DecisionNotificationConsumer:
    """Turns decision events into notification intents, once per prospect and outcome."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._seen: set[tuple[str, bool]] = set()
        self.intents: list[dict[str, Any]] = []

    def handle(self, event: InternalEvent) -> None:
        payload = event.payload.get("payload")
        if not isinstance(payload, dict) or not isinstance(payload.get("prospect_id"), str):
            return
        prospect_id = payload["prospect_id"]
        is_approved = bool(payload.get("is_approved"))

        with self._lock:
            key = (prospect_id, is_approved)
            if key in self._seen:
                logger.debug("referrals.notification_duplicate", extra={"prospect_id": prospect_id})
                return
            self._seen.add(key)
            self.intents.append(
                {
                    "prospect_id": prospect_id,
                    "template": "prospect_approved" if is_approved else "prospect_rejected",
                    "correlation_id": event.payload.get("correlation_id"),
                }
            )
        logger.info("referrals.notification_queued", extra={"prospect_id": prospect_id, "event_name": event.name})

    def reset(self) -> None:
        with self._lock:
            self._seen.clear()
            self.intents.clear()


decision_notification_consumer = DecisionNotificationConsumer()
