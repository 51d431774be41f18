"""Lock state reconciliation for the Glue Lock monitor.

Keeps the locally published ``locked`` / ``measure_battery`` capabilities in
step with the Glue cloud: polls on an adaptive timer, applies user operations
optimistically and rolls them back when the cloud rejects them.
"""

from __future__ import annotations

import asyncio
import enum
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol

from api_client import GlueApiClient
from config import SETTING_POLLING_INTERVAL, ApiConfig, PollConfig
from errors import GlueApiError, OperationError, ReconciliationError
from firmware import FirmwareGate
from scheduler import AdaptiveScheduler
from state import (
    CAPABILITY_BATTERY,
    CAPABILITY_LOCKED,
    LockOperation,
    ObservedDeviceState,
)

_LOGGER = logging.getLogger(__name__)


class CapabilitySink(Protocol):
    def set(self, name: str, value: Any) -> Any: ...


class DeviceSettingsAccessor(Protocol):
    def get(self, key: str) -> Any: ...


class ReconcilerState(enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    OPERATING = "operating"
    STOPPED = "stopped"


class LockReconciler:
    """Reconciles one lock's observed state with the cloud."""

    def __init__(
        self,
        lock_id: str,
        sink: CapabilitySink,
        settings: DeviceSettingsAccessor | None = None,
        api_config: ApiConfig | None = None,
        poll_config: PollConfig | None = None,
        client_factory: Callable[[str], GlueApiClient] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.lock_id = lock_id
        self._sink = sink
        self._api_config = api_config or ApiConfig()
        self._poll_config = poll_config or PollConfig()
        self._client_factory = client_factory or (
            lambda key: GlueApiClient(key, self._api_config)
        )
        self._clock = clock
        self._sleep = sleep

        self.client: GlueApiClient | None = None
        self.firmware: FirmwareGate | None = None
        self.scheduler = AdaptiveScheduler(
            self._poll_config,
            settings=settings,
            error_count=lambda: self.consecutive_errors,
            clock=clock,
        )

        self.state = ReconcilerState.IDLE
        self.observed: ObservedDeviceState | None = None
        self.consecutive_errors = 0
        self._reconcile_lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self.state in (ReconcilerState.POLLING, ReconcilerState.OPERATING)

    async def initialize(self, api_key: str | None) -> bool:
        """Detect firmware, load the current state and start polling."""
        if not api_key:
            _LOGGER.error("Glue API key not found in settings, lock %s stays idle", self.lock_id)
            return False

        if self.client is not None:
            await self.teardown()

        self.client = self._client_factory(api_key)
        self.firmware = FirmwareGate(self.client)
        self.consecutive_errors = 0
        self.state = ReconcilerState.POLLING

        await self.firmware.detect(self.lock_id)
        await self.reconcile_once()
        if self.active:
            self.scheduler.start(self.reconcile_once)
        _LOGGER.info("Lock %s initialized", self.lock_id)
        return True

    async def reconcile_once(self, live: bool = False) -> ObservedDeviceState | None:
        """One fetch-and-publish pass. Never raises on fetch failures.

        ``live`` skips the response cache, for confirming an operation.
        """
        if self.client is None or not self.active:
            return None

        async with self._reconcile_lock:
            try:
                status = await self.client.get_lock_status(self.lock_id, use_cache=not live)
            except GlueApiError as err:
                await self._on_reconcile_failure(ReconciliationError(self.lock_id, err))
                return None

            if not self.active:
                return None

            locked = self.firmware.is_locked(status)
            _LOGGER.debug(
                "Lock event (%s policy, firmware %s): %s -> %s",
                self.firmware.policy_name, status.firmware_version,
                status.last_lock_event.event_type, "locked" if locked else "unlocked",
            )

            self.observed = ObservedDeviceState(
                locked=locked,
                timestamp=status.last_lock_event.timestamp,
                battery_status=status.battery_status,
                updated_at=self._clock(),
            )
            self.consecutive_errors = 0
            await self._publish(CAPABILITY_BATTERY, status.battery_status)
            await self._publish(CAPABILITY_LOCKED, locked)
            return self.observed

    async def _on_reconcile_failure(self, err: ReconciliationError) -> None:
        self.consecutive_errors += 1
        _LOGGER.error("%s (consecutive errors: %d)", err, self.consecutive_errors)
        observed = self.observed
        if observed is not None and observed.is_valid(
            self._clock(), self.scheduler.current_interval
        ):
            _LOGGER.info("Falling back to last observed state: locked=%s", observed.locked)
            await self._publish(CAPABILITY_LOCKED, observed.locked)

    async def _publish(self, name: str, value: Any) -> None:
        if not self.active:
            return
        result = self._sink.set(name, value)
        if inspect.isawaitable(result):
            await result

    async def handle_user_operation(self, locked: bool) -> None:
        """Apply a lock/unlock requested by the user.

        Raises OperationError after reverting the optimistic state when the
        cloud rejects the operation.
        """
        if self.client is None or not self.active:
            raise OperationError(
                self.lock_id,
                LockOperation.for_locked(locked).type,
                RuntimeError("lock is not initialized"),
            )

        operation = LockOperation.for_locked(locked)
        _LOGGER.info("Action taken on %s: %s", self.lock_id, operation.type)
        self.scheduler.on_activity()
        self.state = ReconcilerState.OPERATING
        await self._publish(CAPABILITY_LOCKED, locked)

        try:
            response = await self.client.send_operation(self.lock_id, operation)
        except GlueApiError as err:
            self.consecutive_errors += 1
            if self.state is ReconcilerState.OPERATING:
                self.state = ReconcilerState.POLLING
            if self.observed is not None:
                await self._publish(CAPABILITY_LOCKED, self.observed.locked)
            _LOGGER.error("Failed to send %s to %s: %s", operation.type, self.lock_id, err)
            self.scheduler.schedule_next()
            raise OperationError(self.lock_id, operation.type, err) from err

        _LOGGER.debug("Command sent: %s", response)
        self.consecutive_errors = 0
        await self._sleep(self._poll_config.settle_delay_sec)
        if self.state is ReconcilerState.OPERATING:
            self.state = ReconcilerState.POLLING
        await self.reconcile_once(live=True)
        self.scheduler.schedule_next()

    def on_settings_changed(self, changed_keys: Iterable[str]) -> None:
        """Restart polling with the new interval when it changed."""
        if SETTING_POLLING_INTERVAL not in changed_keys:
            return
        _LOGGER.info(
            "Polling interval changed, base interval now %ds",
            self.scheduler.base_interval(),
        )
        if self.active:
            self.scheduler.schedule_next()

    async def teardown(self) -> None:
        """Stop polling and drop cached responses. Safe to call repeatedly."""
        self.scheduler.stop()
        if self.client is not None:
            self.client.clear_cache()
            await self.client.close()
        if self.state is not ReconcilerState.IDLE:
            self.state = ReconcilerState.STOPPED

    def get_diagnostics(self) -> dict:
        return {
            "lock_id": self.lock_id,
            "state": self.state.value,
            "firmware_version": self.firmware.firmware_version if self.firmware else None,
            "firmware_policy": self.firmware.policy_name if self.firmware else None,
            "consecutive_errors": self.consecutive_errors,
            "retry_attempts": self.client.retry_attempts if self.client else 0,
            "observed": self.observed.to_dict() if self.observed else None,
            "scheduler": self.scheduler.get_status(),
        }
