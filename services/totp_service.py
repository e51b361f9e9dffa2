"""
TOTP Service
Time-based one-time passwords for the exchange release 2FA.

The exchange rejects a code that was already accepted, so each window is
used at most once: a second request in the same 30s window waits for the
next one.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

import pyotp

from utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

TOTP_PERIOD = 30


class TOTPService:
    """Replay-safe TOTP code source backed by pyotp"""

    def __init__(
        self,
        secret: str,
        period: int = TOTP_PERIOD,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._totp = pyotp.TOTP(secret, interval=period) if secret else None
        self._last_used_window: Optional[int] = None
        self._lock = asyncio.Lock()

        if self._totp:
            logger.info("🔐 TOTP_READY: 2FA code provider initialized")
        else:
            logger.warning("⚠️ TOTP_NOT_CONFIGURED: no secret provided - auto-release will fail")

    @property
    def is_configured(self) -> bool:
        return self._totp is not None

    def current_window(self) -> int:
        return int(self._clock() // self.period)

    def time_remaining(self) -> int:
        """Seconds left in the current window"""
        return self.period - int(self._clock() % self.period)

    def generate_code(self) -> str:
        """Current code without replay protection"""
        if not self._totp:
            raise ConfigurationError("TOTP secret not configured")
        return self._totp.at(self._clock())

    def seconds_until_fresh_code(self) -> float:
        if self._last_used_window is None or self.current_window() != self._last_used_window:
            return 0.0
        return float(self.time_remaining() + 1)

    def verify_code(self, code: str) -> bool:
        if not self._totp:
            return False
        return self._totp.verify(code, for_time=self._clock(), valid_window=1)

    async def next_code(self, order_number: Optional[str] = None) -> str:
        """
        Fresh code for a release attempt

        Waits for the next window when a code was already issued in the
        current one, so retries never resend an accepted code.
        """
        if not self._totp:
            raise ConfigurationError("TOTP secret not configured", order_number=order_number)

        async with self._lock:
            if self.current_window() == self._last_used_window:
                wait_time = self.time_remaining()
                logger.info(
                    f"🕐 TOTP_WINDOW_USED: waiting {wait_time}s for next window"
                    + (f" (order {order_number})" if order_number else "")
                )
                await self._sleep(self.seconds_until_fresh_code())

            code = self.generate_code()
            self._last_used_window = self.current_window()
            logger.debug(f"🔐 TOTP_CODE_ISSUED: window {self._last_used_window}")
            return code
