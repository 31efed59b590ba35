"""Collaborator interfaces: where deal findings come from and where results go."""

import logging
from abc import ABC, abstractmethod
from dataclasses import replace

from dealboard.errors import DealAccessDenied, DealNotFound
from dealboard.models import AnalysisContext, Session, Verdict

logger = logging.getLogger(__name__)


class AnalysisResultsProvider(ABC):
    """Read-only source of prior due-diligence findings."""

    @abstractmethod
    async def load(self, deal_id: str, user_id: str) -> AnalysisContext:
        """Return the findings for a deal the user may access.

        Raises:
            DealNotFound: No such deal.
            DealAccessDenied: The deal belongs to someone else.
        """
        ...


class PersistenceSink(ABC):
    """Durable record of completed sessions. Never called for failed ones."""

    @abstractmethod
    async def save(self, session: Session, verdict: Verdict) -> None:
        ...

    async def discard(self, session_id: str) -> None:
        """Forget a session saved moments ago. Missing ids are ignored."""


def check_access(context: AnalysisContext, user_id: str) -> AnalysisContext:
    if context.owner_id is not None and context.owner_id != user_id:
        raise DealAccessDenied(f"Deal {context.deal_id} is not accessible to user {user_id}")
    return context


class InMemoryAnalysisStore(AnalysisResultsProvider):
    def __init__(self, contexts: list[AnalysisContext] | None = None) -> None:
        self._contexts = {c.deal_id: c for c in contexts or []}

    def add(self, context: AnalysisContext) -> None:
        self._contexts[context.deal_id] = context

    async def load(self, deal_id: str, user_id: str) -> AnalysisContext:
        context = self._contexts.get(deal_id)
        if context is None:
            raise DealNotFound(f"Deal {deal_id} not found")
        return check_access(context, user_id)


class InMemoryPersistenceSink(PersistenceSink):
    """Keeps completed sessions in memory for lookup by id."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}

    async def save(self, session: Session, verdict: Verdict) -> None:
        self._sessions[session.id] = replace(session, verdict=verdict)
        logger.debug("Stored session %s for deal %s", session.id, session.deal_id)

    async def discard(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Session | None:
        return self._sessions.get(session_id)

    @property
    def sessions(self) -> list[Session]:
        return list(self._sessions.values())


class CompositeSink(PersistenceSink):
    """Saves to every sink in order, all or nothing.

    When a sink fails, the sinks that already saved the session discard it
    again and the original error propagates.
    """

    def __init__(self, *sinks: PersistenceSink) -> None:
        self._sinks = sinks

    async def save(self, session: Session, verdict: Verdict) -> None:
        saved: list[PersistenceSink] = []
        try:
            for sink in self._sinks:
                await sink.save(session, verdict)
                saved.append(sink)
        except Exception:
            for sink in reversed(saved):
                try:
                    await sink.discard(session.id)
                except Exception:
                    logger.exception("Could not roll back session %s from %s", session.id, type(sink).__name__)
            raise
