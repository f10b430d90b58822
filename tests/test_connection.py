"""Tests for the broker connection state machine and drain loop."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable

import pytest

from pylocpub.connection import BrokerConnection, backoff_delay
from pylocpub.exceptions import BrokerConnectError, BrokerPublishError, FatalConnectionError
from pylocpub.models.sample import LocationSample
from pylocpub.models.status import ConnectionState, SessionIdentity
from pylocpub.publish_queue import PublishQueue

_IDENTITY = SessionIdentity(client_id="test-client", host="broker.test", port=1883, topic="assignment/location")


def _s(ts: int, speed: float = 1.0) -> LocationSample:
    return LocationSample(timestamp=ts, latitude=10.0, longitude=-61.0, speed_mps=speed)


class _FakeTransport:
    def __init__(self, *, connect_failures: int = 0, publish_failures: int = 0) -> None:
        self.connect_failures = connect_failures
        self.publish_failures = publish_failures
        self.connects = 0
        self.disconnects = 0
        self.published: list[tuple[str, bytes]] = []
        self.attempted: list[bytes] = []

    async def connect(self, identity: SessionIdentity, *, timeout: float) -> None:
        self.connects += 1
        if self.connect_failures:
            self.connect_failures -= 1
            raise BrokerConnectError("broker unreachable")

    async def publish(self, topic: str, payload: bytes) -> None:
        self.attempted.append(payload)
        if self.publish_failures:
            self.publish_failures -= 1
            raise BrokerPublishError("no puback")
        self.published.append((topic, payload))

    async def disconnect(self) -> None:
        self.disconnects += 1


class _SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def _connection(transport: _FakeTransport, **kwargs: object) -> tuple[BrokerConnection, _SleepRecorder, list[ConnectionState]]:
    sleep = _SleepRecorder()
    states: list[ConnectionState] = []
    options: dict[str, object] = {
        "student_id": "816034662",
        "max_reconnect_attempts": 3,
        "on_state_change": states.append,
        "sleep": sleep,
    }
    options.update(kwargs)
    return BrokerConnection(transport, _IDENTITY, **options), sleep, states  # type: ignore[arg-type]


async def _wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


async def _cancel(task: asyncio.Task[None]) -> None:
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


def test_backoff_doubles_and_caps() -> None:
    delays = [backoff_delay(n, initial=1.0, maximum=30.0) for n in range(1, 8)]
    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]
    assert backoff_delay(10_000) == 30.0


@pytest.mark.asyncio
async def test_connect_success_transitions() -> None:
    connection, _sleep, states = _connection(_FakeTransport())

    assert await connection.connect() is True

    assert states == [ConnectionState.CONNECTING, ConnectionState.CONNECTED]
    assert connection.state is ConnectionState.CONNECTED


@pytest.mark.asyncio
async def test_connect_failure_is_reported_not_raised() -> None:
    connection, _sleep, states = _connection(_FakeTransport(connect_failures=1))

    assert await connection.connect() is False

    assert states == [ConnectionState.CONNECTING, ConnectionState.FAILED]
    assert isinstance(connection.last_error, BrokerConnectError)


@pytest.mark.asyncio
async def test_unexpected_transport_error_wrapped_as_connect_error() -> None:
    class _Exploding(_FakeTransport):
        async def connect(self, identity: SessionIdentity, *, timeout: float) -> None:
            raise OSError("connection refused")

    connection, _sleep, _states = _connection(_Exploding())

    assert await connection.connect() is False
    assert isinstance(connection.last_error, BrokerConnectError)
    assert isinstance(connection.last_error.cause, OSError)


@pytest.mark.asyncio
async def test_publish_sends_encoded_payload_on_topic() -> None:
    transport = _FakeTransport()
    connection, _sleep, _states = _connection(transport)
    await connection.connect()

    assert await connection.publish(_s(1_700_000_000_000, speed=10.0)) is True

    assert transport.published == [
        ("assignment/location", b"816034662|36.00|1700000000000|10.000000|-61.000000"),
    ]


@pytest.mark.asyncio
async def test_publish_when_disconnected_returns_false() -> None:
    transport = _FakeTransport()
    connection, _sleep, _states = _connection(transport)

    assert await connection.publish(_s(1)) is False
    assert transport.attempted == []


@pytest.mark.asyncio
async def test_disconnect_never_raises() -> None:
    class _BadDisconnect(_FakeTransport):
        async def disconnect(self) -> None:
            raise RuntimeError("socket already closed")

    connection, _sleep, _states = _connection(_BadDisconnect())
    await connection.connect()

    await connection.disconnect()

    assert connection.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_drain_loop_publishes_in_order() -> None:
    transport = _FakeTransport()
    published: list[LocationSample] = []
    connection, _sleep, _states = _connection(transport, on_published=published.append, batch_size=2)
    queue = PublishQueue()
    for ts in range(5):
        queue.put_nowait(_s(ts))

    task = asyncio.create_task(connection.run(queue))
    await _wait_until(lambda: len(published) == 5)
    await _cancel(task)

    assert [sample.timestamp for sample in published] == [0, 1, 2, 3, 4]
    assert connection.samples_sent == 5


@pytest.mark.asyncio
async def test_n_publish_failures_cause_n_increasing_backoffs_then_fatal() -> None:
    transport = _FakeTransport(publish_failures=100)
    fatal: list[FatalConnectionError] = []
    connection, sleep, states = _connection(
        transport,
        max_reconnect_attempts=3,
        max_publish_retries=10,
        on_fatal=fatal.append,
    )
    queue = PublishQueue()
    queue.put_nowait(_s(1))

    with pytest.raises(FatalConnectionError) as exc_info:
        await asyncio.wait_for(connection.run(queue), 1.0)

    # Failures 1..3 each cost one backoff; failure 4 exceeds the limit.
    assert len(transport.attempted) == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert all(a < b for a, b in zip(sleep.delays, sleep.delays[1:], strict=False))
    assert fatal == [exc_info.value]
    assert exc_info.value.attempts == 3
    assert states[-1] is ConnectionState.DISCONNECTED
    assert connection.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_unreachable_broker_goes_fatal_after_max_attempts() -> None:
    transport = _FakeTransport(connect_failures=100)
    connection, sleep, states = _connection(transport, max_reconnect_attempts=2, backoff_max=1.5)

    with pytest.raises(FatalConnectionError):
        await asyncio.wait_for(connection.run(PublishQueue()), 1.0)

    assert transport.connects == 3
    assert sleep.delays == [1.0, 1.5]
    assert ConnectionState.FAILED in states
    assert connection.state is ConnectionState.DISCONNECTED


@pytest.mark.asyncio
async def test_failed_sample_is_retried_and_successful_publish_resets_failures() -> None:
    transport = _FakeTransport(publish_failures=2)
    published: list[LocationSample] = []
    connection, sleep, _states = _connection(transport, on_published=published.append, max_reconnect_attempts=3)
    queue = PublishQueue()
    for ts in range(3):
        queue.put_nowait(_s(ts))

    task = asyncio.create_task(connection.run(queue))
    await _wait_until(lambda: len(published) == 3)
    await _cancel(task)

    assert [sample.timestamp for sample in published] == [0, 1, 2]
    assert sleep.delays == [1.0, 2.0]
    assert connection.consecutive_failures == 0
    assert connection.state is ConnectionState.CONNECTED
    assert transport.disconnects == 2


@pytest.mark.asyncio
async def test_sample_dropped_after_max_publish_retries() -> None:
    transport = _FakeTransport(publish_failures=2)
    published: list[LocationSample] = []
    lost: list[tuple[LocationSample, str]] = []
    connection, _sleep, _states = _connection(
        transport,
        max_publish_retries=1,
        on_published=published.append,
        on_lost=lambda sample, reason: lost.append((sample, reason)),
    )
    queue = PublishQueue()
    queue.put_nowait(_s(1))
    queue.put_nowait(_s(2))

    task = asyncio.create_task(connection.run(queue))
    await _wait_until(lambda: len(published) == 1)
    await _cancel(task)

    assert [sample.timestamp for sample, _reason in lost] == [1]
    assert [sample.timestamp for sample in published] == [2]
    assert connection.samples_lost == 1


@pytest.mark.asyncio
async def test_evicted_sample_does_not_leak_retries_to_new_samples() -> None:
    transport = _FakeTransport(publish_failures=2)
    published: list[LocationSample] = []
    lost: list[tuple[LocationSample, str]] = []
    queue = PublishQueue(capacity=1)
    fresh = _s(2)

    async def evict_during_backoff(_delay: float) -> None:
        # The requeued sample is pushed out by a newer one while reconnecting.
        if not published and fresh not in queue.snapshot() and not lost:
            queue.put_nowait(fresh)
        await asyncio.sleep(0)

    connection, _sleep, _states = _connection(
        transport,
        max_publish_retries=1,
        sleep=evict_during_backoff,
        on_published=published.append,
        on_lost=lambda sample, reason: lost.append((sample, reason)),
    )
    queue.put_nowait(_s(1))

    task = asyncio.create_task(connection.run(queue))
    await _wait_until(lambda: len(published) == 1)
    await _cancel(task)

    # The fresh sample failed once and still got its own retry.
    assert len(transport.attempted) == 3
    assert published == [fresh]
    assert lost == []
    assert connection._retries == {}  # type: ignore[attr-defined]
