"""
Ledger events handed to an external publisher after each committed mutation.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    EXPENSE_CREATED = "expense_created"
    EXPENSE_UPDATED = "expense_updated"
    EXPENSE_DELETED = "expense_deleted"
    SETTLEMENT_RECORDED = "settlement_recorded"
    SETTLEMENT_CANCELLED = "settlement_cancelled"
    SPLIT_UPDATED = "split_updated"
    BUDGET_ALERT = "budget_alert"


@dataclass
class LedgerEvent:
    """Consumers de-duplicate on `id`."""
    type: EventType
    trip_id: int
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "trip_id": self.trip_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
        }


class EventPublisher:
    """Interface for delivering ledger events (push, queue, webhook...)."""

    def publish(self, event: LedgerEvent) -> None:
        raise NotImplementedError


class LoggingEventPublisher(EventPublisher):
    """Default publisher: writes events to the log."""

    def publish(self, event: LedgerEvent) -> None:
        logger.info(f"Ledger event {event.type.value} for trip {event.trip_id}: {event.id}")


def publish_all(publisher: EventPublisher, events: List[LedgerEvent]) -> None:
    """
    Publish events after commit.

    A failing publisher is logged and skipped; the committed write stands.
    """
    for event in events:
        try:
            publisher.publish(event)
        except Exception:
            logger.exception(f"Failed to publish {event.type.value} event {event.id}")
