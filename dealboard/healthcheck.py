"""Member health checks: ping each member's model before convening the board."""

import asyncio
import logging

from dealboard.members import MemberPool

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def run_health_checks(
    pool: MemberPool,
    timeout: float = _TIMEOUT_SEC,
) -> dict[str, tuple[bool, str]]:
    """Ping every member in parallel.

    Returns:
        Dict mapping member id -> (ok, error_message).
        error_message is "" when ok is True.
    """
    async def check_one(member_id: str) -> tuple[str, bool, str]:
        try:
            await asyncio.wait_for(pool.caller(member_id).invoke(_PING_PROMPT), timeout=timeout)
            return member_id, True, ""
        except TimeoutError:
            return member_id, False, f"No answer within {timeout:.0f}s"
        except Exception as exc:
            return member_id, False, str(exc)

    results = await asyncio.gather(*(check_one(m.id) for m in pool.members))
    for member_id, ok, err in results:
        if not ok:
            logger.warning("Health check failed for %s: %s", member_id, err)
    return {member_id: (ok, err) for member_id, ok, err in results}
