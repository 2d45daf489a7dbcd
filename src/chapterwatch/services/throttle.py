"""Request pacing and circuit breaking for the single origin we poll."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

from chapterwatch.errors import OriginBlocked
from chapterwatch.models import ThrottleState

__all__ = ["RequestThrottle", "FORBIDDEN", "TOO_MANY_REQUESTS"]

logger = logging.getLogger(__name__)

FORBIDDEN = 403
TOO_MANY_REQUESTS = 429


class RequestThrottle:
    """Keeps origin fetches at least ``min_gap`` seconds apart and honours cooldowns.

    The throttle is the only writer of its :class:`ThrottleState`. It is meant
    to be reused sequentially by one caller at a time; the update cycle
    guarantees fetches are issued one after another.
    """

    def __init__(
        self,
        min_gap: float,
        *,
        long_cooldown: float,
        short_cooldown: float,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_gap = min_gap
        self.long_cooldown = long_cooldown
        self.short_cooldown = short_cooldown
        self._clock = clock
        self._sleep = sleep
        self._state = ThrottleState()

    @classmethod
    def from_config(cls, config, **kwargs) -> "RequestThrottle":
        return cls(
            config.min_request_gap_seconds,
            long_cooldown=config.long_cooldown_seconds,
            short_cooldown=config.short_cooldown_seconds,
            **kwargs,
        )

    @property
    def state(self) -> ThrottleState:
        return self._state.model_copy()

    @property
    def blocked(self) -> bool:
        return self.seconds_remaining() > 0

    def seconds_remaining(self) -> float:
        return max(0.0, self._state.blocked_until - self._clock())

    async def reserve_slot(self) -> None:
        """Wait until the next fetch may start, or raise :class:`OriginBlocked`.

        The slot is stamped before the fetch begins, so a slow fetch cannot
        let a second caller in early.
        """

        remaining = self.seconds_remaining()
        if remaining > 0:
            raise OriginBlocked(remaining)

        gap = self._clock() - self._state.last_request_at
        if gap < self.min_gap:
            await self._sleep(self.min_gap - gap)

        self._state.last_request_at = self._clock()

    def record_status(self, status: int) -> float:
        """Trip the breaker when ``status`` is a throttling signal.

        Returns the cooldown applied in seconds (``0`` when nothing changed).
        """

        if status == FORBIDDEN:
            cooldown = self.long_cooldown
        elif status == TOO_MANY_REQUESTS:
            cooldown = self.short_cooldown
        else:
            return 0.0

        self.trip(cooldown)
        logger.warning("Origin answered HTTP %d; pausing requests for %.0fs", status, cooldown)
        return cooldown

    def trip(self, cooldown: float) -> None:
        """Block requests for ``cooldown`` seconds; an active longer block is kept."""

        until = self._clock() + cooldown
        if until > self._state.blocked_until:
            self._state.blocked_until = until
