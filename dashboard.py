"""Web dashboard for the Glue Lock monitor.

Exposes the published lock state as JSON, a Server-Sent Events stream for
live updates, and lock/unlock endpoints that go through the reconciler.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from aiohttp import web

from errors import OperationError
from reconciler import LockReconciler
from state import StateEvent, StateManager

_LOGGER = logging.getLogger(__name__)

KEEPALIVE_SEC = 30.0


def _sse_frame(message: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(message)}\n\n".encode("utf-8")


class Dashboard:
    """JSON and SSE view of one lock, with lock/unlock actions."""

    def __init__(
        self,
        state_manager: StateManager,
        reconciler: LockReconciler,
        host: str = "0.0.0.0",
        port: int = 8099,
    ):
        self._state = state_manager
        self._reconciler = reconciler
        self._host = host
        self._port = port
        self._runner: web.AppRunner | None = None
        # One queue per connected stream
        self._subscribers: set[asyncio.Queue] = set()

        self._state.register_callback(self._on_state_change)

        self._app = web.Application()
        self._app.add_routes([
            web.get("/api/state", self._handle_state),
            web.get("/api/events", self._handle_events),
            web.get("/api/events/stream", self._handle_stream),
            web.get("/api/diagnostics", self._handle_diagnostics),
            web.post("/api/lock", self._handle_lock),
            web.post("/api/unlock", self._handle_unlock),
        ])

    @property
    def app(self) -> web.Application:
        return self._app

    def _on_state_change(self, capabilities: dict[str, Any], event: StateEvent) -> None:
        message = {
            "type": "state_update",
            "state": dict(capabilities),
            "event": event.to_dict(),
        }
        for queue in self._subscribers:
            queue.put_nowait(message)

    async def _handle_state(self, request: web.Request) -> web.Response:
        observed = self._reconciler.observed
        return web.json_response({
            "lock_id": self._reconciler.lock_id,
            "state": self._state.to_dict(),
            "observed": observed.to_dict() if observed else None,
            "scheduler": self._reconciler.scheduler.get_status(),
        })

    async def _handle_events(self, request: web.Request) -> web.Response:
        try:
            count = int(request.query.get("count", "50"))
        except ValueError:
            raise web.HTTPBadRequest(text="count must be an integer")
        return web.json_response({"events": self._state.event_log.recent(count)})

    async def _handle_diagnostics(self, request: web.Request) -> web.Response:
        diag = self._reconciler.get_diagnostics()
        diag["sse_clients"] = len(self._subscribers)
        return web.json_response(diag)

    async def _handle_lock(self, request: web.Request) -> web.Response:
        return await self._operate(True)

    async def _handle_unlock(self, request: web.Request) -> web.Response:
        return await self._operate(False)

    async def _operate(self, locked: bool) -> web.Response:
        try:
            await self._reconciler.handle_user_operation(locked)
        except OperationError as err:
            return web.json_response(
                {"ok": False, "error": str(err), "state": self._state.to_dict()},
                status=502,
            )
        return web.json_response({"ok": True, "state": self._state.to_dict()})

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Stream capability changes, starting with the current state."""
        response = web.StreamResponse(
            headers={"Content-Type": "text/event-stream", "Cache-Control": "no-cache"}
        )
        await response.prepare(request)

        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.add(queue)
        try:
            await response.write(_sse_frame({
                "type": "initial_state",
                "state": dict(self._state.capabilities),
                "events": self._state.event_log.recent(20),
            }))
            while True:
                try:
                    message = await asyncio.wait_for(queue.get(), KEEPALIVE_SEC)
                except asyncio.TimeoutError:
                    await response.write(b": keepalive\n\n")
                    continue
                await response.write(_sse_frame(message))
        except ConnectionResetError:
            _LOGGER.debug("Event stream client went away")
        finally:
            self._subscribers.discard(queue)
        return response

    async def start(self) -> None:
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        await web.TCPSite(self._runner, self._host, self._port).start()
        _LOGGER.info("Dashboard running at http://%s:%d", self._host, self._port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        _LOGGER.info("Dashboard stopped")
