"""
Message event log.

Every dispatch, outbox write, attempt and inbound message is recorded as a
``{event_type, payload, timestamp}`` entry in an injected sink. Recording
is best effort: a failing sink is logged and never reaches the caller.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Protocol

import structlog

from purchase_saga.domain.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class EventLogStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"


@dataclass(frozen=True)
class MessageEventRecord:
    event_type: str
    payload: Dict[str, Any]
    timestamp: datetime
    status: EventLogStatus = EventLogStatus.SUCCESS
    error_message: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)


class EventSink(Protocol):
    async def save(self, record: MessageEventRecord) -> None:
        ...


class StructlogEventSink:
    """Writes records to the application log."""

    def __init__(self, logger_name: str = "purchase_saga.message_events"):
        self._logger = structlog.get_logger(logger_name)

    async def save(self, record: MessageEventRecord) -> None:
        self._logger.info(
            "message_event",
            message_event_type=record.event_type,
            payload=record.payload,
            timestamp=record.timestamp.isoformat(),
            status=record.status.value,
            error=record.error_message,
            **record.context,
        )


class EventRecorder:
    """Front for an EventSink that absorbs sink failures."""

    def __init__(
        self,
        sink: Optional[EventSink] = None,
        clock: Clock = utc_now,
        log_payload: bool = True,
    ):
        """
        Args:
            sink: Destination for records (defaults to the application log)
            clock: Time source for record timestamps
            log_payload: Record payloads; when False only the event type is kept
        """
        self.sink = sink or StructlogEventSink()
        self.clock = clock
        self.log_payload = log_payload

    async def record(
        self,
        event_type: str,
        payload: Dict[str, Any],
        status: EventLogStatus = EventLogStatus.SUCCESS,
        error_message: Optional[str] = None,
        **context: Any,
    ) -> None:
        record = MessageEventRecord(
            event_type=event_type,
            payload=payload if self.log_payload else {},
            timestamp=self.clock(),
            status=status,
            error_message=error_message,
            context=context,
        )
        try:
            await self.sink.save(record)
        except Exception as e:
            logger.warning(
                "message_event_log_failed",
                event_type=event_type,
                error=str(e),
            )

    async def record_failure(
        self, event_type: str, payload: Dict[str, Any], error: BaseException, **context: Any
    ) -> None:
        await self.record(
            event_type,
            payload,
            status=EventLogStatus.FAILURE,
            error_message=str(error),
            **context,
        )
