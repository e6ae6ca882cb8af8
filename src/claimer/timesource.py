import asyncio
import logging
import socket
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import ntplib

import claimer.constants as C

log = logging.getLogger("claimer.time")


def _system_now() -> datetime:
    return datetime.now(timezone.utc)


def _query_offset(server: str, timeout: float) -> float:
    return ntplib.NTPClient().request(server, version=3, timeout=timeout).offset


class TimeSource:
    """Best available estimate of the current UTC instant.

    Corrected once at startup against an NTP server; if that fails the local
    clock is used as is. ``corrected`` is informational only.
    """

    def __init__(
        self,
        *,
        offset: timedelta = timedelta(0),
        corrected: bool = False,
        clock: Callable[[], datetime] = _system_now,
    ):
        self.offset = offset
        self.corrected = corrected
        self._clock = clock

    @classmethod
    async def synchronize(
        cls,
        server: str = C.NTP_SERVER,
        timeout: float = C.NTP_TIMEOUT,
        *,
        clock: Callable[[], datetime] = _system_now,
    ) -> "TimeSource":
        """One NTP query, bounded by ``timeout``. Never raises."""
        try:
            offset = await asyncio.wait_for(asyncio.to_thread(_query_offset, server, timeout), timeout=timeout)
        except (ntplib.NTPException, socket.gaierror, OSError, asyncio.TimeoutError) as e:
            log.warning("NTP query to %s failed, using local clock: %s", server, str(e) or type(e).__name__)
            return cls(clock=clock)
        log.info("Clock corrected against %s, offset %+.3fs", server, offset)
        return cls(offset=timedelta(seconds=offset), corrected=True, clock=clock)

    def now(self) -> datetime:
        return self._clock() + self.offset

    def describe(self) -> dict:
        return {"corrected": self.corrected, "offset_s": self.offset.total_seconds()}
