"""Lock state model and capability publishing for the Glue Lock monitor."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable

_LOGGER = logging.getLogger(__name__)

OPERATION_LOCK = "lock"
OPERATION_UNLOCK = "unlock"

CAPABILITY_LOCKED = "locked"
CAPABILITY_BATTERY = "measure_battery"


@dataclass(frozen=True)
class LockEvent:
    """Most recent lock/unlock event reported by the cloud."""

    event_type: str           # e.g. remoteLock, manualUnlock, localLock
    timestamp: str            # ISO-8601
    source: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockEvent:
        return cls(
            event_type=str(data["eventType"]),
            timestamp=str(data.get("timestamp", "")),
            source=data.get("source"),
        )


@dataclass(frozen=True)
class LockStatus:
    """Snapshot of a lock as returned by GET /locks/{id}."""

    id: str
    description: str | None
    battery_status: int
    connection_status: str    # connected, disconnected, ...
    firmware_version: str
    last_lock_event: LockEvent

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockStatus:
        """Parse the wire JSON. Raises KeyError/TypeError/ValueError if malformed."""
        return cls(
            id=str(data["id"]),
            description=data.get("description"),
            battery_status=int(data.get("batteryStatus", 0)),
            connection_status=str(data.get("connectionStatus", "unknown")),
            firmware_version=str(data.get("firmwareVersion") or "0"),
            last_lock_event=LockEvent.from_dict(data["lastLockEvent"]),
        )

    @property
    def display_name(self) -> str:
        return self.description or f"Glue Lock {self.id}"


@dataclass(frozen=True)
class LockOperation:
    """Outbound lock/unlock request."""

    type: str
    timestamp: str | None = None

    def __post_init__(self) -> None:
        if self.type not in (OPERATION_LOCK, OPERATION_UNLOCK):
            raise ValueError(f"Unknown lock operation: {self.type}")

    @classmethod
    def for_locked(cls, locked: bool) -> LockOperation:
        return cls(OPERATION_LOCK if locked else OPERATION_UNLOCK)

    def to_payload(self) -> dict[str, str]:
        payload = {"type": self.type}
        if self.timestamp:
            payload["timestamp"] = self.timestamp
        return payload


@dataclass
class CacheEntry:
    """Cached response body and the clock reading it was stored at."""

    data: Any
    stored_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.stored_at < ttl


@dataclass(frozen=True)
class ObservedDeviceState:
    """Last confirmed lock state, authoritative for the UI."""

    locked: bool
    timestamp: str            # Instant of the remote event behind this state
    battery_status: int
    updated_at: float         # Local clock reading when it was recorded

    def is_valid(self, now: float, max_age: float) -> bool:
        """Usable as an outage fallback while no older than max_age."""
        return now - self.updated_at <= max_age

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class StateEvent:
    """A single capability change."""

    timestamp: str
    capability: str
    old_value: Any
    new_value: Any

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EventLog:
    """Append-only log of capability changes."""

    def __init__(self, events_file: str | None, max_memory_events: int = 500):
        self._events_file = events_file
        self._max_memory = max_memory_events
        self._events: list[StateEvent] = []
        self._load_recent()

    def _load_recent(self) -> None:
        """Load recent events from disk."""
        if not self._events_file or not os.path.exists(self._events_file):
            return
        try:
            with open(self._events_file) as f:
                lines = f.readlines()
            for line in lines[-self._max_memory:]:
                line = line.strip()
                if line:
                    self._events.append(StateEvent(**json.loads(line)))
        except (OSError, ValueError, TypeError) as e:
            _LOGGER.warning("Error loading events: %s", e)

    def add(self, event: StateEvent) -> None:
        """Add an event to the log."""
        self._events.append(event)
        if len(self._events) > self._max_memory:
            self._events = self._events[-self._max_memory:]
        if not self._events_file:
            return
        try:
            os.makedirs(os.path.dirname(self._events_file) or ".", exist_ok=True)
            with open(self._events_file, "a") as f:
                f.write(json.dumps(event.to_dict()) + "\n")
        except OSError as e:
            _LOGGER.error("Error writing event: %s", e)

    def recent(self, count: int = 50) -> list[dict]:
        """Get the most recent events."""
        return [e.to_dict() for e in self._events[-count:]]


class StateManager:
    """Capability store the reconciler publishes into.

    Implements the ``set(name, value)`` sink contract and notifies
    registered callbacks whenever a capability value changes.
    """

    def __init__(self, events_file: str | None = None):
        self.capabilities: dict[str, Any] = {}
        self.last_updated: str = ""
        self.event_log = EventLog(events_file)
        self._callbacks: list[Callable[[dict[str, Any], StateEvent], None]] = []

    def register_callback(
        self, callback: Callable[[dict[str, Any], StateEvent], None]
    ) -> None:
        """Register a callback for capability changes."""
        self._callbacks.append(callback)

    def _notify(self, event: StateEvent) -> None:
        for cb in self._callbacks:
            try:
                cb(self.capabilities, event)
            except Exception as e:
                _LOGGER.error("Error in state callback: %s", e)

    def _now(self) -> str:
        return datetime.now(timezone.utc).isoformat()

    def get(self, name: str) -> Any:
        return self.capabilities.get(name)

    def set(self, name: str, value: Any) -> bool:
        """Publish a capability value, returns True if it changed."""
        self.last_updated = self._now()
        old = self.capabilities.get(name)
        if name in self.capabilities and old == value:
            return False
        self.capabilities[name] = value
        event = StateEvent(
            timestamp=self.last_updated,
            capability=name,
            old_value=old,
            new_value=value,
        )
        self.event_log.add(event)
        self._notify(event)
        _LOGGER.info("%s: %s → %s", name, old, value)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "capabilities": dict(self.capabilities),
            "last_updated": self.last_updated,
        }
