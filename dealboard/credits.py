"""Admission control: per-user board credits with reserve / commit / refund.

A reservation debits one credit up front. The session either commits it
(the debit becomes final) or refunds it (the debit is reversed). Both are
one-way: a committed reservation is never refunded and a refunded one is
never refunded twice.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from config.config_loader import CreditsConfig
from dealboard.errors import InsufficientCredits, InvalidSessionState

logger = logging.getLogger(__name__)


class Plan(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


@dataclass(frozen=True)
class Reservation:
    id: str
    user_id: str
    created_at: datetime
    source: str            # "monthly" or "extra"


@dataclass(frozen=True)
class CreditLedgerEntry:
    user_id: str
    reservation_id: str
    kind: str              # "debit" or "refund"
    source: str
    at: datetime


@dataclass
class CreditStatus:
    user_id: str
    plan: Plan
    can_use_board: bool
    monthly_allocation: int
    used_this_month: int
    remaining_monthly: int
    extra_credits: int
    total_available: int
    active_sessions: int
    sessions_in_period: int
    next_reset: datetime
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["plan"] = self.plan.value
        data["next_reset"] = self.next_reset.isoformat()
        return data


def next_month_start(now: datetime) -> datetime:
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


class CreditGate(ABC):
    """Atomic credit reservation for board sessions."""

    @abstractmethod
    async def reserve(self, user_id: str) -> Reservation:
        """Debit one credit and claim a concurrency slot.

        Raises:
            InsufficientCredits: When any admission limit is reached.
        """
        ...

    @abstractmethod
    async def commit(self, reservation: Reservation) -> None:
        """Make the debit final and release the concurrency slot."""
        ...

    @abstractmethod
    async def refund(self, reservation: Reservation) -> bool:
        """Reverse the debit. Returns False when nothing was refunded."""
        ...

    @abstractmethod
    async def status(self, user_id: str) -> CreditStatus:
        ...


@dataclass
class _Account:
    plan: Plan
    monthly_allocation: int
    last_reset: datetime
    used_this_month: int = 0
    extra_credits: int = 0
    active: set[str] = field(default_factory=set)
    starts: deque = field(default_factory=deque)


class InMemoryCreditGate(CreditGate):
    """Process-local credit gate. Every counter change happens under one lock."""

    def __init__(
        self,
        config: CreditsConfig,
        plans: dict[str, Plan] | None = None,
        default_plan: Plan = Plan.PRO,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._config = config
        self._plans = dict(plans or {})
        self._default_plan = default_plan
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = asyncio.Lock()
        self._accounts: dict[str, _Account] = {}
        self._states: dict[str, str] = {}
        self._reservations: dict[str, Reservation] = {}
        self._ledger: list[CreditLedgerEntry] = []

    @property
    def ledger(self) -> tuple[CreditLedgerEntry, ...]:
        return tuple(self._ledger)

    def entries_for(self, reservation_id: str, kind: str | None = None) -> list[CreditLedgerEntry]:
        return [
            e for e in self._ledger
            if e.reservation_id == reservation_id and (kind is None or e.kind == kind)
        ]

    def set_plan(self, user_id: str, plan: Plan) -> None:
        """Change a user's plan; the new allocation applies immediately."""
        self._plans[user_id] = plan
        account = self._accounts.get(user_id)
        if account is not None:
            account.plan = plan
            account.monthly_allocation = self._allocation(plan)

    def _allocation(self, plan: Plan) -> int:
        return self._config.monthly_allocation.get(plan.value, 0)

    def _account(self, user_id: str, now: datetime) -> _Account:
        account = self._accounts.get(user_id)
        if account is None:
            plan = self._plans.get(user_id, self._default_plan)
            account = _Account(plan=plan, monthly_allocation=self._allocation(plan), last_reset=now)
            self._accounts[user_id] = account
        elif (account.last_reset.year, account.last_reset.month) != (now.year, now.month):
            logger.info("Monthly credit reset for user %s", user_id)
            account.used_this_month = 0
            account.monthly_allocation = self._allocation(account.plan)
            account.last_reset = now

        window_start = now - timedelta(hours=self._config.period_hours)
        while account.starts and account.starts[0] <= window_start:
            account.starts.popleft()
        return account

    def _rejection(self, account: _Account) -> str | None:
        remaining = max(0, account.monthly_allocation - account.used_this_month)
        if account.plan is Plan.FREE and account.extra_credits == 0:
            return "The FREE plan does not include board sessions"
        if len(account.active) >= self._config.max_concurrent_sessions:
            return f"At most {self._config.max_concurrent_sessions} concurrent board session(s) allowed"
        if len(account.starts) >= self._config.max_sessions_per_period:
            return (
                f"At most {self._config.max_sessions_per_period} board session(s) "
                f"per {self._config.period_hours:g}h allowed"
            )
        if remaining + account.extra_credits <= 0:
            return "No board credits left this month"
        return None

    async def reserve(self, user_id: str) -> Reservation:
        async with self._lock:
            now = self._clock()
            account = self._account(user_id, now)
            reason = self._rejection(account)
            if reason is not None:
                logger.info("Credit reservation refused for %s: %s", user_id, reason)
                raise InsufficientCredits(reason)

            if account.used_this_month < account.monthly_allocation:
                account.used_this_month += 1
                source = "monthly"
            else:
                account.extra_credits -= 1
                source = "extra"

            reservation = Reservation(id=uuid.uuid4().hex, user_id=user_id, created_at=now, source=source)
            account.active.add(reservation.id)
            account.starts.append(now)
            self._reservations[reservation.id] = reservation
            self._states[reservation.id] = "reserved"
            self._ledger.append(CreditLedgerEntry(user_id, reservation.id, "debit", source, now))
            logger.debug("Reserved credit %s for %s from %s", reservation.id, user_id, source)
            return reservation

    async def commit(self, reservation: Reservation) -> None:
        async with self._lock:
            state = self._states.get(reservation.id)
            if state != "reserved":
                raise InvalidSessionState(f"Cannot commit reservation {reservation.id} in state {state}")
            self._states[reservation.id] = "committed"
            self._accounts[reservation.user_id].active.discard(reservation.id)

    async def refund(self, reservation: Reservation) -> bool:
        async with self._lock:
            state = self._states.get(reservation.id)
            if state == "refunded":
                logger.debug("Reservation %s already refunded", reservation.id)
                return False
            if state != "reserved":
                logger.warning("Refusing refund of reservation %s in state %s", reservation.id, state)
                return False

            now = self._clock()
            account = self._account(reservation.user_id, now)
            if reservation.source == "extra":
                account.extra_credits += 1
            elif reservation.created_at.month == now.month and reservation.created_at.year == now.year:
                account.used_this_month = max(0, account.used_this_month - 1)
            account.active.discard(reservation.id)
            if reservation.created_at in account.starts:
                account.starts.remove(reservation.created_at)

            self._states[reservation.id] = "refunded"
            self._ledger.append(
                CreditLedgerEntry(reservation.user_id, reservation.id, "refund", reservation.source, now)
            )
            logger.info("Refunded credit %s to %s", reservation.id, reservation.user_id)
            return True

    async def add_extra_credits(self, user_id: str, amount: int) -> int:
        """Grant purchased or promotional credits. Returns the new extra balance."""
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        async with self._lock:
            account = self._account(user_id, self._clock())
            account.extra_credits += amount
            return account.extra_credits

    async def status(self, user_id: str) -> CreditStatus:
        async with self._lock:
            now = self._clock()
            account = self._account(user_id, now)
            remaining = max(0, account.monthly_allocation - account.used_this_month)
            reason = self._rejection(account)
            return CreditStatus(
                user_id=user_id,
                plan=account.plan,
                can_use_board=reason is None,
                monthly_allocation=account.monthly_allocation,
                used_this_month=account.used_this_month,
                remaining_monthly=remaining,
                extra_credits=account.extra_credits,
                total_available=remaining + account.extra_credits,
                active_sessions=len(account.active),
                sessions_in_period=len(account.starts),
                next_reset=next_month_start(now),
                reason=reason,
            )
