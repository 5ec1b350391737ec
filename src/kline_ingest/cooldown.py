"""Shared request cooldown window for rate-limited API access."""

import logging
import threading
from typing import Callable, Optional

from .planner import now_ms

logger = logging.getLogger(__name__)


class CooldownHandler:
    """
    Process-wide throttle window shared by every fetch worker.

    One instance is created at startup and handed to each client. Workers
    check ``can_request`` before issuing a request and push the window out
    when the API signals throttling. The window only ever moves forward and
    is cleared lazily once it has passed.
    """

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._until: Optional[int] = None
        self._lock = threading.Lock()

    def can_request(self) -> bool:
        """True unless an unexpired cooldown window is set."""
        with self._lock:
            if self._until is None:
                return True

            if self._until < self._clock():
                self._until = None
                return True

            return False

    def set_cooldown_until(self, until: int) -> int:
        """Extend the window to ``until``; never shortens an existing window."""
        with self._lock:
            if self._until is not None:
                self._until = max(self._until, until)
                logger.debug(
                    f"Set cooldown until {self._until} (window already active, kept the max)"
                )
            else:
                self._until = until
                logger.debug(f"Set cooldown until {self._until}")

            return self._until

    def get_until(self) -> Optional[int]:
        with self._lock:
            return self._until

    def remaining_ms(self) -> int:
        """Milliseconds left in the current window, 0 when none is active."""
        with self._lock:
            if self._until is None:
                return 0
            return max(0, self._until - self._clock())
