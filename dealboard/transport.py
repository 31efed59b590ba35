"""Inbound surface: start a board and read its events as a stream.

Admission errors are raised by ``BoardService.start_board`` itself, before
any event exists, so an HTTP layer can map them to a status code. Once a
stream is handed out, every outcome arrives as an event and the stream
ends with the terminal one. Closing the stream early cancels the session,
which refunds its credit.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass

from dealboard.credits import CreditGate, CreditStatus
from dealboard.errors import BoardError
from dealboard.events import ProgressEvent
from dealboard.models import Session
from dealboard.session import BoardSession, SessionController
from dealboard.stores import InMemoryPersistenceSink

logger = logging.getLogger(__name__)


def encode_sse(event: ProgressEvent) -> str:
    """One server-sent event: a single data line holding the JSON event."""
    return f"data: {event.to_json()}\n\n"


class BoardStream:
    """Event stream of one running session. Iterate it at most once.

    The session starts running as soon as the stream exists, so an
    admitted session always reaches DONE or FAILED and always frees its
    deal, whether or not anybody reads the events. ``aclose`` cancels it.
    """

    def __init__(self, controller: SessionController, board: BoardSession) -> None:
        self._controller = controller
        self._board = board
        self._consumed = False
        self._task = asyncio.create_task(controller.run(board))
        self._task.add_done_callback(self._log_outcome)

    @property
    def session_id(self) -> str:
        return self._board.id

    @property
    def board(self) -> BoardSession:
        return self._board

    def _log_outcome(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, BoardError):
            logger.debug("Session %s ended with %s", self.session_id, exc.reason)
        elif exc is not None:
            logger.error("Session %s crashed: %s", self.session_id, exc)

    async def aclose(self) -> None:
        """Cancel the session unless it already finished, then wait for it.

        A session cancelled before its first step never enters ``run``, so
        its admission is undone here instead.
        """
        if not self._task.done():
            logger.info("Stream for session %s closed early, cancelling", self.session_id)
            self._task.cancel()
        await asyncio.wait([self._task])
        await self._controller.abandon(self._board)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        if self._consumed:
            raise RuntimeError(f"Stream for session {self.session_id} is already being consumed")
        self._consumed = True
        try:
            async for event in self._board.emitter.stream():
                yield event
        finally:
            await self.aclose()

    async def sse(self) -> AsyncIterator[str]:
        async for event in self:
            yield encode_sse(event)


@dataclass
class BoardService:
    """What the CLI and the HTTP app need from a running deployment."""

    controller: SessionController
    credits: CreditGate
    records: InMemoryPersistenceSink | None = None

    async def start_board(self, deal_id: str, user_id: str) -> BoardStream:
        """Admit a session and return its event stream.

        Raises:
            BoardError: Admission rejected (credits, deal lookup, conflict).
        """
        board = await self.controller.open(deal_id, user_id)
        return BoardStream(self.controller, board)

    async def credit_status(self, user_id: str) -> CreditStatus:
        return await self.credits.status(user_id)

    def get_session(self, session_id: str) -> Session | None:
        if self.records is None:
            return None
        return self.records.get(session_id)
