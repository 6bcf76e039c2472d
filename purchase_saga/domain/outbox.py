"""Outbox entry: an event durably staged for delivery to the broker."""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from purchase_saga.domain.clock import utc_now


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    PUBLISHED = "PUBLISHED"


@dataclass
class OutboxEntry:
    """
    One staged event.

    Written in the same transaction as the aggregate change it reports,
    moved to PUBLISHED by the relay once the broker acknowledged it.
    """

    aggregate_id: str
    aggregate_type: str
    event_type: str
    event_id: str
    payload: Dict[str, Any]
    status: OutboxStatus = OutboxStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    published_at: Optional[datetime] = None
    publish_attempts: int = 0
    last_error: Optional[str] = None
    id: Optional[int] = None
