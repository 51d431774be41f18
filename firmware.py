"""Firmware compatibility detection and lock-event interpretation.

Firmware 2.5 and later reports precise event types, so the lock state is a
closed-set lookup. Older firmware is interpreted with the looser legacy rule:
anything not mentioning "unlock" counts as locked. The two rules disagree on
unrecognized event types (e.g. "scheduledMaintenance": unlocked vs locked) and
are kept as separate code paths.
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from api_client import GlueApiClient
from errors import GlueApiError
from state import LockStatus

_LOGGER = logging.getLogger(__name__)

COMPATIBLE_VERSION = (2, 5)

LOCK_EVENT_TYPES = frozenset({"remotelock", "manuallock", "locallock"})
UNLOCK_EVENT_TYPES = frozenset({"remoteunlock", "manualunlock", "localunlock"})

_VERSION_RE = re.compile(r"^\s*v?(\d+)(?:\.(\d+))?")

EventPolicy = Callable[[str], bool]


def is_locked_compatible(event_type: str) -> bool:
    """Locked only for a recognized lock-causing event."""
    return event_type.lower() in LOCK_EVENT_TYPES


def is_locked_legacy(event_type: str) -> bool:
    """Locked unless the event type mentions "unlock"."""
    return "unlock" not in str(event_type).lower()


def parse_version(version: str | None) -> tuple[int, int]:
    """Leading two numeric components of a dotted version, (0, 0) if none."""
    match = _VERSION_RE.match(version or "")
    if not match:
        return (0, 0)
    return (int(match.group(1)), int(match.group(2) or 0))


def is_compatible_version(version: str | None) -> bool:
    return parse_version(version) >= COMPATIBLE_VERSION


class FirmwareGate:
    """Decides once per device lifetime which event policy applies."""

    def __init__(self, client: GlueApiClient):
        self._client = client
        self.firmware_version: str | None = None
        self.compatible = False
        self.detected = False

    @property
    def policy(self) -> EventPolicy:
        return is_locked_compatible if self.compatible else is_locked_legacy

    @property
    def policy_name(self) -> str:
        return "compatible" if self.compatible else "legacy"

    async def detect(self, lock_id: str) -> bool:
        """Fetch the lock status and record firmware compatibility.

        A failed fetch keeps the previous result and is only logged.
        """
        if self.detected:
            return self.compatible
        try:
            status = await self._client.get_lock_status(lock_id)
        except GlueApiError as err:
            _LOGGER.error(
                "Failed to check firmware version of %s, using %s policy: %s",
                lock_id, self.policy_name, err,
            )
            return self.compatible
        return self.observe(status)

    def observe(self, status: LockStatus) -> bool:
        """Complete detection from an already fetched status."""
        if self.detected:
            return self.compatible
        self.firmware_version = status.firmware_version
        self.compatible = is_compatible_version(status.firmware_version)
        self.detected = True
        _LOGGER.info(
            "Firmware version: %s (Compatible: %s)",
            self.firmware_version, self.compatible,
        )
        return self.compatible

    def reset(self) -> None:
        """Forget the detection result, e.g. when the device is reinitialized."""
        self.firmware_version = None
        self.compatible = False
        self.detected = False

    def is_locked(self, status: LockStatus) -> bool:
        return self.policy(status.last_lock_event.event_type)
