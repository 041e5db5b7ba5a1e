"""
Async helpers for the exception rule engine.
"""

import asyncio
from typing import Any, Callable, Optional

from exception_rules.config.logging_config import get_logger
from exception_rules.utils.error_handling import safe_execute

logger = get_logger(__name__)


class Debouncer:
    """
    Last-call-wins delayed call with a single pending slot.

    Every ``call`` cancels the pending call, if any, and schedules a new one
    ``delay`` seconds later on the running event loop. Cancelling and
    rescheduling happen on the same loop turn, so a superseded call can
    never fire.
    """

    def __init__(self, delay: float, name: str = "debouncer"):
        """
        Initialize the debouncer.

        Args:
            delay: Quiescence window in seconds
            name: Name used in log messages
        """
        self.delay = delay
        self.name = name
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        """Whether a call is scheduled and has not fired yet."""
        return self._handle is not None

    def call(self, func: Callable[..., Any], *args: Any) -> None:
        """
        Schedule ``func(*args)`` after the quiescence window.

        Must be called from within a running event loop. Exceptions raised by
        ``func`` are logged, never propagated into the loop.
        """
        loop = asyncio.get_running_loop()
        self.cancel()
        self._handle = loop.call_later(self.delay, self._fire, func, args)

    def cancel(self) -> bool:
        """
        Cancel the pending call.

        Returns:
            bool: True if a pending call was cancelled
        """
        if self._handle is None:
            return False
        self._handle.cancel()
        self._handle = None
        logger.debug(f"{self.name}: cancelled pending call")
        return True

    def _fire(self, func: Callable[..., Any], args: tuple) -> None:
        self._handle = None
        safe_execute(func, *args, error_message=f"{self.name}: delayed call failed")
