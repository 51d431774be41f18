"""Glue cloud API client with response caching and retry/backoff.

Requests flow through two explicit stages wrapped around the wire call:

    CacheStage  ->  RetryStage  ->  wire (aiohttp)

The cache stage answers fresh GETs from memory and stores successful GET
bodies. The retry stage classifies failures and replays retryable ones with
exponential backoff. Both stages share state per client instance only.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

import aiohttp

from config import ApiConfig, CacheConfig, RetryConfig
from errors import (
    ClientError,
    ErrorResponse,
    GlueApiError,
    ServerError,
    TransientNetworkError,
    error_from_response,
)
from state import CacheEntry, LockOperation, LockStatus

_LOGGER = logging.getLogger(__name__)

LOCKS_PATH = "/locks"
OPERATIONS_PATH = "/operations"


def status_path(lock_id: str) -> str:
    return f"{LOCKS_PATH}/{lock_id}"


def operations_path(lock_id: str) -> str:
    return f"{LOCKS_PATH}/{lock_id}{OPERATIONS_PATH}"


_OPERATIONS_RE = re.compile(rf"^{LOCKS_PATH}/([^/]+){OPERATIONS_PATH}/?$")


def stale_paths(path: str) -> list[str]:
    """Cached GET paths a POST to ``path`` makes stale."""
    match = _OPERATIONS_RE.match(path)
    return [status_path(match.group(1))] if match else []


@dataclass(frozen=True)
class RequestSpec:
    """A single request, replayable as-is."""

    method: str
    path: str
    params: dict[str, Any] | None = None
    json: Any = None
    timeout: float | None = None
    use_cache: bool = True


@dataclass
class ApiResponse:
    status: int
    data: Any
    cached: bool = False


SendFn = Callable[[RequestSpec], Awaitable[ApiResponse]]


def cache_key(request: RequestSpec) -> str:
    """Deterministic signature of method, path and query parameters."""
    params = json.dumps(request.params, sort_keys=True) if request.params else ""
    return f"{request.method.lower()}-{request.path}-{params}"


def backoff_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before replay number ``attempt`` (1-based)."""
    return min(config.initial_delay_sec * 2 ** (attempt - 1), config.max_delay_sec)


class ResponseCache:
    """In-memory response cache keyed by request signature."""

    def __init__(self, config: CacheConfig, clock: Callable[[], float] = time.monotonic):
        self._config = config
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def get(self, key: str) -> CacheEntry | None:
        """Return the entry for key if it is still fresh."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self._clock(), self._config.ttl_sec):
            del self._entries[key]
            return None
        return entry

    def put(self, key: str, data: Any) -> None:
        # Last write wins; concurrent fetches may both populate the same key
        self._entries[key] = CacheEntry(data=data, stored_at=self._clock())

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class RetryCounter:
    """Consecutive retry attempts of one error-recovery sequence."""

    def __init__(self) -> None:
        self.attempts = 0

    def increment(self) -> int:
        self.attempts += 1
        return self.attempts

    def reset(self) -> None:
        self.attempts = 0


class RetryBudget(ABC):
    """Hands out the counter a request's retry sequence is charged to."""

    @abstractmethod
    def for_request(self) -> RetryCounter:
        ...

    @property
    def attempts(self) -> int:
        return 0


class SharedRetryBudget(RetryBudget):
    """One counter shared by every request of a client.

    Concurrent requests draw from the same budget, so a retry sequence in one
    request limits replays in another.
    """

    def __init__(self) -> None:
        self._counter = RetryCounter()

    def for_request(self) -> RetryCounter:
        return self._counter

    @property
    def attempts(self) -> int:
        return self._counter.attempts


class PerRequestRetryBudget(RetryBudget):
    """A fresh counter for every request."""

    def for_request(self) -> RetryCounter:
        return RetryCounter()


class RetryStage:
    """Replay retryable failures with exponential backoff."""

    def __init__(
        self,
        send: SendFn,
        config: RetryConfig,
        budget: RetryBudget,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._send = send
        self._config = config
        self._budget = budget
        self._sleep = sleep

    async def __call__(self, request: RequestSpec) -> ApiResponse:
        return await self._attempt(request, self._budget.for_request())

    async def _attempt(self, request: RequestSpec, counter: RetryCounter) -> ApiResponse:
        try:
            response = await self._send(request)
        except GlueApiError as err:
            if err.is_retryable and counter.attempts < self._config.max_attempts:
                attempt = counter.increment()
                delay = backoff_delay(attempt, self._config)
                _LOGGER.warning(
                    "%s %s failed (%s), retry %d/%d in %.1fs",
                    request.method, request.path, err,
                    attempt, self._config.max_attempts, delay,
                )
                await self._sleep(delay)
                return await self._attempt(request, counter)
            counter.reset()
            raise
        counter.reset()
        return response


class CacheStage:
    """Serve fresh GETs from the cache, populate it on success."""

    def __init__(self, send: SendFn, cache: ResponseCache):
        self._send = send
        self._cache = cache

    async def __call__(self, request: RequestSpec) -> ApiResponse:
        if request.method.upper() != "GET" or not self._cache.enabled:
            return await self._send(request)

        key = cache_key(request)
        entry = self._cache.get(key) if request.use_cache else None
        if entry is not None:
            _LOGGER.debug("Cache hit for %s", key)
            return ApiResponse(status=200, data=entry.data, cached=True)

        response = await self._send(request)
        self._cache.put(key, response.data)
        return response


async def _read_body(resp: aiohttp.ClientResponse) -> Any:
    raw = await resp.read()
    if not raw:
        return None
    try:
        text = raw.decode(resp.charset or "utf-8")
    except (UnicodeDecodeError, LookupError) as err:
        error_cls = ServerError if resp.status >= 500 else ClientError
        raise error_cls(
            f"Undecodable response body: {err}",
            code="INVALID_RESPONSE",
            response=ErrorResponse(resp.status, raw),
        ) from err
    try:
        return json.loads(text)
    except ValueError:
        return text


class GlueApiClient:
    """Client for the Glue lock REST API."""

    def __init__(
        self,
        api_key: str,
        config: ApiConfig | None = None,
        session: aiohttp.ClientSession | None = None,
        transport: SendFn | None = None,
        retry_budget: RetryBudget | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._config = config or ApiConfig()
        self.headers = {
            "Authorization": f"Api-Key {api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        self._session = session
        self._owns_session = session is None
        self.cache = ResponseCache(self._config.cache, clock)
        self.retry_budget = retry_budget or SharedRetryBudget()
        self._pipeline: SendFn = CacheStage(
            RetryStage(
                transport or self._send,
                self._config.retry,
                self.retry_budget,
                sleep,
            ),
            self.cache,
        )

    @property
    def retry_attempts(self) -> int:
        return self.retry_budget.attempts

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> GlueApiClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def _send(self, request: RequestSpec) -> ApiResponse:
        """Perform the HTTP call, normalizing every failure to GlueApiError."""
        session = self._get_session()
        timeout = request.timeout or self._config.timeout_sec
        url = f"{self._config.endpoint}{request.path}"
        try:
            async with session.request(
                request.method,
                url,
                params=request.params,
                json=request.json,
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                body = await _read_body(resp)
                if resp.status >= 400:
                    raise error_from_response(resp.status, body)
                return ApiResponse(status=resp.status, data=body)
        except asyncio.TimeoutError as err:
            raise TransientNetworkError(
                f"timeout of {timeout}s exceeded", code="ETIMEDOUT"
            ) from err
        except aiohttp.ClientError as err:
            raise TransientNetworkError(
                str(err) or type(err).__name__, code=type(err).__name__
            ) from err

    async def fetch_response(
        self, path: str, params: dict[str, Any] | None = None, use_cache: bool = True
    ) -> ApiResponse:
        return await self._pipeline(
            RequestSpec(
                "GET", path, params=params,
                timeout=self._config.timeout_sec, use_cache=use_cache,
            )
        )

    async def fetch(
        self, path: str, params: dict[str, Any] | None = None, use_cache: bool = True
    ) -> Any:
        """GET a resource, answered from the cache while fresh.

        With ``use_cache=False`` the request always goes out and its body
        replaces any cached one.
        """
        response = await self.fetch_response(path, params, use_cache)
        return response.data

    async def submit(
        self,
        path: str,
        payload: Any,
        invalidate: Iterable[str] = (),
        timeout: float | None = None,
    ) -> Any:
        """POST a payload and drop the cached GETs it makes stale.

        Besides ``invalidate``, an operation on a lock always drops that
        lock's cached status.
        """
        request = RequestSpec(
            "POST", path, json=payload, timeout=timeout or self._config.timeout_sec
        )
        try:
            response = await self._pipeline(request)
        finally:
            for stale in {*stale_paths(path), *invalidate}:
                if self.cache.invalidate(cache_key(RequestSpec("GET", stale))):
                    _LOGGER.debug("Invalidated cached %s", stale)
        return response.data

    async def get_lock_status(self, lock_id: str, use_cache: bool = True) -> LockStatus:
        data = await self.fetch(status_path(lock_id), use_cache=use_cache)
        try:
            return LockStatus.from_dict(data)
        except (KeyError, TypeError, ValueError) as err:
            raise ClientError(
                f"Malformed status for lock {lock_id}: {err!r}", code="INVALID_RESPONSE"
            ) from err

    async def list_locks(self) -> list[LockStatus]:
        """All locks the API key has access to."""
        data = await self.fetch(LOCKS_PATH)
        locks = []
        for item in data or []:
            try:
                locks.append(LockStatus.from_dict(item))
            except (KeyError, TypeError, ValueError) as err:
                _LOGGER.warning("Skipping malformed lock entry: %r", err)
        return locks

    async def send_operation(self, lock_id: str, operation: LockOperation) -> Any:
        """Send a lock/unlock operation with the longer actuation timeout."""
        return await self.submit(
            operations_path(lock_id),
            operation.to_payload(),
            timeout=self._config.operations_timeout_sec,
        )

    def clear_cache(self) -> None:
        self.cache.clear()
