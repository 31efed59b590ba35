"""Ordered, append-only progress events for one board session.

The orchestrator writes to a ``ProgressEmitter``; transports (SSE, the CLI,
tests) read from it. ``emit`` is synchronous and never blocks: events go to
an in-memory log and an unbounded queue in call order, so a reader always
sees them exactly as the session produced them.
"""

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dealboard.errors import InvalidSessionState

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    SESSION_STARTED = "session_started"
    MEMBER_ANALYSIS_STARTED = "member_analysis_started"
    MEMBER_ANALYSIS_COMPLETED = "member_analysis_completed"
    MEMBER_ANALYSIS_FAILED = "member_analysis_failed"
    DEBATE_ROUND_STARTED = "debate_round_started"
    DEBATE_RESPONSE = "debate_response"
    DEBATE_ROUND_COMPLETED = "debate_round_completed"
    VOTING_STARTED = "voting_started"
    MEMBER_VOTED = "member_voted"
    VERDICT_REACHED = "verdict_reached"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.VERDICT_REACHED, EventType.ERROR)


@dataclass(frozen=True)
class ProgressEvent:
    type: EventType
    seq: int
    timestamp: float
    session_id: str
    member_id: str | None = None
    round_number: int | None = None
    message: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type.value,
            "seq": self.seq,
            "timestamp": self.timestamp,
            "sessionId": self.session_id,
        }
        if self.member_id is not None:
            data["memberId"] = self.member_id
        if self.round_number is not None:
            data["roundNumber"] = self.round_number
        if self.message is not None:
            data["message"] = self.message
        if self.payload:
            data["payload"] = self.payload
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


class ProgressEmitter:
    """Append-only event sink owned by exactly one running session."""

    def __init__(
        self,
        session_id: str,
        listener: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self.session_id = session_id
        self._listener = listener
        self._log: list[ProgressEvent] = []
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._closed = False

    @property
    def events(self) -> tuple[ProgressEvent, ...]:
        """Snapshot of everything emitted so far, in order."""
        return tuple(self._log)

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(
        self,
        event_type: EventType,
        *,
        member_id: str | None = None,
        round_number: int | None = None,
        message: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> ProgressEvent:
        if self._closed:
            raise InvalidSessionState(
                f"Session {self.session_id} already emitted its terminal event; refusing {event_type.value}"
            )
        event = ProgressEvent(
            type=event_type,
            seq=len(self._log),
            timestamp=time.time(),
            session_id=self.session_id,
            member_id=member_id,
            round_number=round_number,
            message=message,
            payload=payload or {},
        )
        self._log.append(event)
        self._queue.put_nowait(event)
        if event_type.is_terminal:
            self._closed = True

        if self._listener is not None:
            try:
                self._listener(event)
            except Exception:
                logger.exception("Progress listener failed on %s", event_type.value)
        return event

    async def stream(self) -> AsyncIterator[ProgressEvent]:
        """Yield events in emission order until the terminal event.

        Intended for a single consumer.
        """
        while True:
            event = await self._queue.get()
            yield event
            if event.type.is_terminal:
                return
