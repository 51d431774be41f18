from __future__ import annotations

import asyncio

import pytest

from api_client import (
    PerRequestRetryBudget,
    RequestSpec,
    RetryBudget,
    SharedRetryBudget,
    backoff_delay,
    cache_key,
    stale_paths,
    status_path,
)
from config import ApiConfig, CacheConfig, RetryConfig
from errors import ClientError, ErrorResponse, ServerError, TransientNetworkError
from state import LockOperation, LockStatus

from fakes import FakeClock, FakeSleep, FakeTransport, lock_status, make_client

STATUS = "/locks/lock-1"
OPERATIONS = "/locks/lock-1/operations"


def _server_error() -> ServerError:
    return ServerError("Service Unavailable", code="HTTP_503", response=ErrorResponse(503, None))


def test_cache_key_is_deterministic_over_params():
    a = RequestSpec("GET", "/locks", params={"b": 2, "a": 1})
    b = RequestSpec("GET", "/locks", params={"a": 1, "b": 2})
    assert cache_key(a) == cache_key(b)
    assert cache_key(a) != cache_key(RequestSpec("GET", "/locks"))
    assert cache_key(RequestSpec("GET", STATUS)) == "get-/locks/lock-1-"


def test_get_lock_status_parses_and_caches():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status())
    client = make_client(transport)

    async def runner():
        first = await client.get_lock_status("lock-1")
        second = await client.fetch_response(STATUS)
        return first, second

    first, second = asyncio.run(runner())

    assert isinstance(first, LockStatus)
    assert first.battery_status == 80
    assert first.last_lock_event.event_type == "localLock"
    assert second.cached is True
    assert transport.count("GET", STATUS) == 1


def test_cache_entry_expires_at_ttl():
    clock = FakeClock()
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status(battery=80), lock_status(battery=70))
    client = make_client(transport, ApiConfig(cache=CacheConfig(enabled=True, ttl_sec=30.0)), clock=clock)

    async def runner():
        await client.fetch(STATUS)
        clock.advance(29.9)
        still_cached = await client.fetch_response(STATUS)
        clock.advance(0.1)
        expired = await client.fetch_response(STATUS)
        return still_cached, expired

    still_cached, expired = asyncio.run(runner())

    assert still_cached.cached is True
    assert still_cached.data["batteryStatus"] == 80
    assert expired.cached is False
    assert expired.data["batteryStatus"] == 70
    assert transport.count("GET", STATUS) == 2


def test_disabled_cache_is_never_consulted_or_populated():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status())
    client = make_client(transport, ApiConfig(cache=CacheConfig(enabled=False)))

    async def runner():
        await client.fetch(STATUS)
        await client.fetch(STATUS)

    asyncio.run(runner())

    assert transport.count("GET", STATUS) == 2
    assert len(client.cache) == 0


def test_params_are_cached_separately():
    transport = FakeTransport()
    transport.queue("GET", "/locks", [])
    client = make_client(transport)

    async def runner():
        await client.fetch("/locks", params={"page": 1})
        await client.fetch("/locks", params={"page": 2})
        await client.fetch("/locks", params={"page": 1})

    asyncio.run(runner())

    assert transport.count("GET", "/locks") == 2


def test_operation_invalidates_cached_status():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status(event_type="remoteLock"), lock_status(event_type="remoteUnlock"))
    transport.queue("POST", OPERATIONS, {"id": "op-1"})
    client = make_client(transport)

    async def runner():
        await client.get_lock_status("lock-1")
        await client.send_operation("lock-1", LockOperation("unlock"))
        return await client.fetch_response(STATUS)

    after = asyncio.run(runner())

    assert after.cached is False
    assert after.data["lastLockEvent"]["eventType"] == "remoteUnlock"
    assert cache_key(RequestSpec("GET", status_path("lock-1"))) in client.cache


def test_failed_operation_still_invalidates_cached_status():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status())
    transport.queue("POST", OPERATIONS, ClientError("Bad Request", response=ErrorResponse(400, {})))
    client = make_client(transport)

    async def runner():
        await client.fetch(STATUS)
        with pytest.raises(ClientError):
            await client.send_operation("lock-1", LockOperation("lock"))

    asyncio.run(runner())

    assert len(client.cache) == 0


def test_submit_to_operations_path_invalidates_status():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status(event_type="remoteLock"), lock_status(event_type="remoteUnlock"))
    transport.queue("POST", OPERATIONS, {"id": "op-1"})
    client = make_client(transport)

    async def runner():
        await client.fetch(STATUS)
        await client.submit(OPERATIONS, {"type": "unlock"})
        return await client.fetch_response(STATUS)

    after = asyncio.run(runner())

    assert after.cached is False
    assert after.data["lastLockEvent"]["eventType"] == "remoteUnlock"


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/locks/lock-1/operations", ["/locks/lock-1"]),
        ("/locks/lock-1/operations/", ["/locks/lock-1"]),
        ("/locks/lock-1", []),
        ("/locks/a/b/operations", []),
        ("/operations", []),
    ],
)
def test_stale_paths(path, expected):
    assert stale_paths(path) == expected


def test_uncached_fetch_goes_out_and_refreshes_cache():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status(battery=80), lock_status(battery=60))
    client = make_client(transport)

    async def runner():
        await client.fetch(STATUS)
        live = await client.get_lock_status("lock-1", use_cache=False)
        cached = await client.fetch_response(STATUS)
        return live, cached

    live, cached = asyncio.run(runner())

    assert live.battery_status == 60
    assert cached.cached is True
    assert cached.data["batteryStatus"] == 60
    assert transport.count("GET", STATUS) == 2


def test_send_operation_payload_and_timeout():
    transport = FakeTransport()
    transport.queue("POST", OPERATIONS, {"ok": True})
    config = ApiConfig(timeout_sec=5.0, operations_timeout_sec=45.0)
    client = make_client(transport, config)

    result = asyncio.run(client.send_operation("lock-1", LockOperation("lock")))

    request = transport.requests[0]
    assert result == {"ok": True}
    assert request.json == {"type": "lock"}
    assert request.timeout == 45.0


def test_status_reads_use_default_timeout():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status())
    client = make_client(transport, ApiConfig(timeout_sec=5.0))

    asyncio.run(client.fetch(STATUS))

    assert transport.requests[0].timeout == 5.0


def test_retry_ceiling_then_error_and_counter_reset():
    clock = FakeClock()
    sleep = FakeSleep(clock)
    transport = FakeTransport()
    transport.queue("GET", STATUS, *[_server_error() for _ in range(5)])
    client = make_client(transport, clock=clock, sleep=sleep)

    async def runner():
        with pytest.raises(ServerError) as excinfo:
            await client.fetch(STATUS)
        return excinfo.value

    error = asyncio.run(runner())

    assert transport.count("GET", STATUS) == 1 + 3
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert error.response.status == 503
    assert client.retry_attempts == 0


def test_backoff_is_capped():
    config = RetryConfig(max_attempts=6, initial_delay_sec=1.0, max_delay_sec=10.0)
    assert [backoff_delay(n, config) for n in range(1, 7)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]


def test_transient_error_recovers_and_resets_counter():
    sleep = FakeSleep()
    transport = FakeTransport()
    transport.queue("GET", STATUS, TransientNetworkError("Network Error", code="ECONNRESET"), lock_status())
    client = make_client(transport, sleep=sleep)

    data = asyncio.run(client.fetch(STATUS))

    assert data["id"] == "lock-1"
    assert sleep.delays == [1.0]
    assert client.retry_attempts == 0


def test_client_error_is_never_retried():
    sleep = FakeSleep()
    transport = FakeTransport()
    transport.queue("GET", STATUS, ClientError("Bad Request", response=ErrorResponse(400, {"error": "x"})))
    client = make_client(transport, sleep=sleep)

    async def runner():
        with pytest.raises(ClientError) as excinfo:
            await client.fetch(STATUS)
        return excinfo.value

    error = asyncio.run(runner())

    assert transport.count("GET", STATUS) == 1
    assert sleep.delays == []
    assert error.response.body == {"error": "x"}
    assert client.retry_attempts == 0


def test_exhausted_shared_budget_skips_replay():
    transport = FakeTransport()
    transport.queue("GET", STATUS, _server_error())
    budget = SharedRetryBudget()
    budget.for_request().attempts = 3
    client = make_client(transport, retry_budget=budget)

    async def runner():
        with pytest.raises(ServerError):
            await client.fetch(STATUS)

    asyncio.run(runner())

    assert transport.count("GET", STATUS) == 1
    assert client.retry_attempts == 0


def test_retry_budgets():
    with pytest.raises(TypeError):
        RetryBudget()
    shared = SharedRetryBudget()
    assert shared.for_request() is shared.for_request()
    per_request = PerRequestRetryBudget()
    assert per_request.for_request() is not per_request.for_request()
    assert per_request.attempts == 0


def test_malformed_status_is_a_client_error():
    transport = FakeTransport()
    transport.queue("GET", STATUS, {"id": "lock-1"})
    client = make_client(transport)

    async def runner():
        with pytest.raises(ClientError) as excinfo:
            await client.get_lock_status("lock-1")
        return excinfo.value

    error = asyncio.run(runner())

    assert error.code == "INVALID_RESPONSE"
    assert transport.count("GET", STATUS) == 1


def test_list_locks_skips_malformed_entries():
    transport = FakeTransport()
    transport.queue("GET", "/locks", [lock_status("a"), {"id": "b"}, lock_status("c")])
    client = make_client(transport)

    locks = asyncio.run(client.list_locks())

    assert [lock.id for lock in locks] == ["a", "c"]


def test_clear_cache():
    transport = FakeTransport()
    transport.queue("GET", STATUS, lock_status())
    transport.queue("GET", "/locks", [])
    client = make_client(transport)

    async def runner():
        await client.fetch(STATUS)
        await client.fetch("/locks")

    asyncio.run(runner())
    assert len(client.cache) == 2

    client.clear_cache()
    assert len(client.cache) == 0


def test_auth_headers():
    client = make_client(FakeTransport())
    assert client.headers == {
        "Authorization": "Api-Key test-api-key",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }
