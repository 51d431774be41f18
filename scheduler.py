"""Adaptive polling scheduler for the Glue Lock monitor.

Shortens the poll interval right after a user operation so the real
post-operation state shows up quickly, and stretches it while the backend
keeps failing to shed load.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from config import SETTING_POLLING_INTERVAL, PollConfig

_LOGGER = logging.getLogger(__name__)


class AdaptiveScheduler:
    """Self-rescheduling single-shot poll timer with an adaptive interval."""

    def __init__(
        self,
        poll_config: PollConfig,
        settings: Any = None,
        error_count: Callable[[], int] = lambda: 0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = poll_config
        self._settings = settings
        self._error_count = error_count
        self._clock = clock
        self._last_activity_time: float | None = None
        self._last_poll_time: float | None = None
        self._next_poll_time: float | None = None
        self._handle: asyncio.TimerHandle | None = None
        self._task: asyncio.Task | None = None
        self._running = False
        self._poll_callback: Callable[[], Awaitable[Any]] | None = None
        self.current_interval = self.base_interval()

    @property
    def running(self) -> bool:
        return self._running

    def on_activity(self) -> None:
        """Called when a user operation is sent.

        Switches to short-interval polling temporarily.
        """
        self._last_activity_time = self._clock()
        _LOGGER.debug("Activity detected, switching to active polling")

    def base_interval(self) -> float:
        """Configured interval in seconds, clamped to the allowed minutes."""
        minutes: Any = None
        if self._settings is not None:
            minutes = self._settings.get(SETTING_POLLING_INTERVAL)
        try:
            minutes = float(minutes) if minutes else None
        except (TypeError, ValueError):
            _LOGGER.warning("Ignoring invalid polling interval %r", minutes)
            minutes = None
        if minutes is None:
            minutes = self._config.default_interval_min
        minutes = max(self._config.min_interval_min, min(minutes, self._config.max_interval_min))
        return minutes * 60.0

    def _is_active_mode(self) -> bool:
        """Check if a user operation happened recently."""
        if self._last_activity_time is None:
            return False
        elapsed = self._clock() - self._last_activity_time
        return elapsed < self._config.active_window_sec

    def get_next_poll_interval(self, consecutive_errors: int | None = None) -> float:
        """Calculate the next poll interval in seconds."""
        if consecutive_errors is None:
            consecutive_errors = self._error_count()
        base = self.base_interval()

        if self._is_active_mode():
            interval = max(base / self._config.active_divisor, self._config.min_active_interval_sec)
            mode = "active"
        elif consecutive_errors > 1:
            interval = min(
                base * (1 + consecutive_errors * self._config.error_backoff_factor),
                base * self._config.max_backoff_multiplier,
            )
            mode = "backoff"
        else:
            interval = base
            mode = "normal"

        _LOGGER.debug(
            "Poll mode: %s, errors: %d, interval: %ds", mode, consecutive_errors, interval
        )
        return float(interval)

    def start(
        self, poll_callback: Callable[[], Awaitable[Any]], delay: float | None = None
    ) -> None:
        """Start polling; the first pass runs after ``delay`` or the adaptive interval."""
        self._poll_callback = poll_callback
        self._running = True
        _LOGGER.info("Adaptive scheduler started")
        self.schedule_next(delay)

    def schedule_next(self, delay: float | None = None) -> None:
        """(Re)arm the single-shot timer, replacing any pending one."""
        if not self._running:
            return
        self._cancel_timer()
        if delay is None:
            delay = self.get_next_poll_interval()
            self.current_interval = delay
        loop = asyncio.get_running_loop()
        self._next_poll_time = self._clock() + delay
        self._handle = loop.call_later(delay, self._fire)
        _LOGGER.debug("Next poll in %.0fs", delay)

    def _fire(self) -> None:
        self._handle = None
        if self._running:
            self._task = asyncio.ensure_future(self._run_once())

    async def _run_once(self) -> None:
        if self._poll_callback is not None:
            try:
                await self._poll_callback()
            except Exception as e:
                _LOGGER.error("Poll callback error: %s", e)
            self._last_poll_time = self._clock()
        self.schedule_next()

    def _cancel_timer(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._next_poll_time = None

    def stop(self) -> None:
        """Stop the scheduler. In-flight passes are left to finish."""
        if self._running:
            _LOGGER.info("Adaptive scheduler stopped")
        self._running = False
        self._cancel_timer()

    def get_status(self) -> dict:
        """Get scheduler status for diagnostics."""
        now = self._clock()
        return {
            "running": self._running,
            "mode": "active" if self._is_active_mode() else "normal",
            "base_interval_sec": self.base_interval(),
            "current_interval_sec": self.current_interval,
            "next_poll_in_sec": (
                round(self._next_poll_time - now, 1)
                if self._next_poll_time is not None else None
            ),
            "last_activity_ago_sec": (
                round(now - self._last_activity_time, 1)
                if self._last_activity_time is not None else None
            ),
            "last_poll_ago_sec": (
                round(now - self._last_poll_time, 1)
                if self._last_poll_time is not None else None
            ),
        }
