"""
Per-session throttle for Google Calendar calls.

The ledger remembers when each (session, category) pair last hit the
calendar. A call that comes too soon is delayed until the minimum spacing
has elapsed, never dropped.
"""
import asyncio
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple

from vibecal.utils.logger import get_logger, short_id

logger = get_logger(__name__)

LedgerKey = Tuple[str, str]


class RateLimitLedger:
    """
    (session_id, category) -> last call instant.

    Usage:
        ledger = RateLimitLedger(min_interval=1.0)
        await ledger.acquire(session_id, "delete")
        await calendar.delete_event(event_id)
    """

    def __init__(
        self,
        min_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._last_call: Dict[LedgerKey, float] = {}
        self._locks: Dict[LedgerKey, asyncio.Lock] = {}

    async def acquire(self, session_id: str, category: str = "calendar") -> float:
        """
        Wait until this session may make another call in `category`, then
        record the call.

        Returns:
            Seconds waited
        """
        key = (session_id, category)
        lock = self._locks.setdefault(key, asyncio.Lock())

        async with lock:
            waited = 0.0
            last = self._last_call.get(key)
            if last is not None:
                elapsed = self._clock() - last
                if elapsed < self.min_interval:
                    waited = self.min_interval - elapsed
                    logger.info(
                        f"Rate limiting {category} call for session {short_id(session_id)}, waiting {waited * 1000:.0f}ms"
                    )
                    await self._sleep(waited)
            self._last_call[key] = self._clock()
            return waited

    def last_call(self, session_id: str, category: str = "calendar") -> Optional[float]:
        return self._last_call.get((session_id, category))

    def forget(self, session_id: str) -> None:
        """Drop every entry for a session (on logout)."""
        for key in [k for k in self._last_call if k[0] == session_id]:
            self._last_call.pop(key, None)
            self._locks.pop(key, None)
