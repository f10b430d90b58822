"""Lifecycle of the single outbound broker connection.

State machine::

    disconnected --connect()--> connecting --ok--> connected
                                connecting --error--> failed
    connected --publish error--> connecting (backoff, reconnect)
    any --disconnect()--> disconnected

Consecutive failures (failed connects and failed publishes alike) are
counted.  Each one costs a backoff sleep; once the count exceeds
``max_reconnect_attempts`` the connection halts in ``disconnected`` and
``on_fatal`` is told.  A successful publish resets the count.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from pylocpub._transport import BrokerTransport
from pylocpub.exceptions import BrokerConnectError, BrokerPublishError, FatalConnectionError
from pylocpub.models.sample import LocationSample
from pylocpub.models.status import ConnectionState, SessionIdentity
from pylocpub.payload import encode_payload
from pylocpub.publish_queue import PublishQueue

_logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, *, initial: float = 1.0, maximum: float = 30.0) -> float:
    """Delay before reconnect *attempt* (1-based): ``initial * 2**(attempt-1)``, capped."""
    if attempt < 1:
        return 0.0
    # Avoid float overflow on very long outages.
    exponent = min(attempt - 1, 62)
    return min(initial * (2**exponent), maximum)


class BrokerConnection:
    """Owns one broker connection and maps queued samples onto publishes."""

    def __init__(
        self,
        transport: BrokerTransport,
        identity: SessionIdentity,
        *,
        student_id: str = "",
        connect_timeout: float = 10.0,
        max_reconnect_attempts: int = 5,
        max_publish_retries: int = 3,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        batch_size: int = 10,
        on_state_change: Callable[[ConnectionState], None] | None = None,
        on_published: Callable[[LocationSample], None] | None = None,
        on_lost: Callable[[LocationSample, str], None] | None = None,
        on_fatal: Callable[[FatalConnectionError], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._transport = transport
        self._identity = identity
        self._student_id = student_id
        self._connect_timeout = connect_timeout
        self._max_reconnect_attempts = max_reconnect_attempts
        self._max_publish_retries = max_publish_retries
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._batch_size = batch_size
        self._on_state_change = on_state_change
        self._on_published = on_published
        self._on_lost = on_lost
        self._on_fatal = on_fatal
        self._sleep = sleep
        self._logger = logger or _logger

        self._state = ConnectionState.DISCONNECTED
        self._failures = 0
        self._last_error: Exception | None = None
        # id(sample) -> (sample, failed attempts). Holding the sample keeps
        # its id from being reused while the entry exists; entries for
        # samples no longer queued are pruned after every requeue.
        self._retries: dict[int, tuple[LocationSample, int]] = {}
        self.samples_sent = 0
        self.samples_lost = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def identity(self) -> SessionIdentity:
        return self._identity

    @property
    def last_error(self) -> Exception | None:
        return self._last_error

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._logger.debug("Broker connection %s -> %s", self._state, state)
        self._state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def connect(self, identity: SessionIdentity | None = None) -> bool:
        """Attempt a single connect; return whether it succeeded.

        Failures are recorded in :attr:`last_error` as
        :class:`BrokerConnectError` and never raised.
        """
        if identity is not None:
            self._identity = identity
        target = self._identity
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._transport.connect(target, timeout=self._connect_timeout)
        except BrokerConnectError as exc:
            self._record_connect_failure(exc)
            return False
        except Exception as exc:
            self._record_connect_failure(
                BrokerConnectError(f"Connect to {target.host}:{target.port} failed: {exc}", cause=exc)
            )
            return False
        self._logger.info("Connected to broker %s:%s as %s", target.host, target.port, target.client_id)
        self._set_state(ConnectionState.CONNECTED)
        return True

    def _record_connect_failure(self, exc: BrokerConnectError) -> None:
        self._last_error = exc
        self._logger.warning("Broker connect failed: %s", exc)
        self._set_state(ConnectionState.FAILED)

    async def publish(self, sample: LocationSample) -> bool:
        """Encode *sample* and publish it on the session topic.

        Returns ``True`` once the transport reports success.  Returns
        ``False`` when not connected or the publish fails; the failure is
        kept in :attr:`last_error`.
        """
        if self._state is not ConnectionState.CONNECTED:
            self._logger.debug("Publish skipped; connection is %s", self._state)
            return False
        payload = encode_payload(self._student_id, sample)
        self._logger.debug("Publishing to %s: %s", self._identity.topic, payload)
        try:
            await self._transport.publish(self._identity.topic, payload.encode("utf-8"))
        except BrokerPublishError as exc:
            self._last_error = exc
            self._logger.warning("Publish failed: %s", exc)
            return False
        except Exception as exc:
            self._last_error = BrokerPublishError(f"Publish failed: {exc}", cause=exc)
            self._logger.warning("Publish failed: %s", exc, exc_info=True)
            return False
        return True

    async def disconnect(self) -> None:
        """Close the transport. Errors are logged, never raised."""
        try:
            await self._transport.disconnect()
        except Exception:
            self._logger.warning("Broker disconnect raised; ignoring", exc_info=True)
        finally:
            self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Drain loop
    # ------------------------------------------------------------------

    async def run(self, queue: PublishQueue) -> None:
        """Move samples from *queue* to the broker until cancelled.

        Raises
        ------
        FatalConnectionError
            When consecutive failures exceed ``max_reconnect_attempts``.
        """
        if self._state is not ConnectionState.CONNECTED and not await self.connect():
            await self._recover()

        while True:
            batch = [await queue.get()]
            batch.extend(queue.drain(self._batch_size - 1))
            failed_at: int | None = None
            for index, sample in enumerate(batch):
                if not await self.publish(sample):
                    failed_at = index
                    break
                self._on_sample_sent(sample)
            if failed_at is None:
                continue

            self._retry_later(queue, batch[failed_at:])
            self._set_state(ConnectionState.CONNECTING)
            await self._reset_transport()
            await self._recover()

    def _on_sample_sent(self, sample: LocationSample) -> None:
        self._failures = 0
        self._retries.pop(id(sample), None)
        self.samples_sent += 1
        if self._on_published is not None:
            self._on_published(sample)

    def _drop(self, sample: LocationSample, reason: str) -> None:
        self._retries.pop(id(sample), None)
        self.samples_lost += 1
        self._logger.warning("Dropping sample ts=%s: %s", sample.timestamp, reason)
        if self._on_lost is not None:
            self._on_lost(sample, reason)

    def _retry_later(self, queue: PublishQueue, pending: list[LocationSample]) -> None:
        failed, untried = pending[0], pending[1:]
        retries = self.failed_attempts(failed) + 1
        requeue: list[LocationSample] = []
        if retries > self._max_publish_retries:
            self._drop(failed, f"publish retries exhausted ({self._max_publish_retries})")
        else:
            self._retries[id(failed)] = (failed, retries)
            requeue.append(failed)
        requeue.extend(untried)
        for sample in queue.requeue(requeue):
            self._drop(sample, "queue full on requeue")
        self._prune_retries(queue)

    def failed_attempts(self, sample: LocationSample) -> int:
        """Failed publishes recorded for *sample* while it is queued."""
        entry = self._retries.get(id(sample))
        if entry is None or entry[0] is not sample:
            return 0
        return entry[1]

    def _prune_retries(self, queue: PublishQueue) -> None:
        # Samples evicted by drop-oldest or cleared never come back.
        queued = {id(sample) for sample in queue.snapshot()}
        for key in [key for key in self._retries if key not in queued]:
            del self._retries[key]

    async def _reset_transport(self) -> None:
        try:
            await self._transport.disconnect()
        except Exception:
            self._logger.debug("Transport reset raised; ignoring", exc_info=True)

    async def _recover(self) -> None:
        """Back off and reconnect until connected or attempts run out."""
        while True:
            self._failures += 1
            if self._failures > self._max_reconnect_attempts:
                await self._halt()
            delay = backoff_delay(self._failures, initial=self._backoff_initial, maximum=self._backoff_max)
            self._logger.info(
                "Reconnect attempt %d/%d in %.1fs",
                self._failures,
                self._max_reconnect_attempts,
                delay,
            )
            await self._sleep(delay)
            if await self.connect():
                return

    async def _halt(self) -> None:
        attempts = self._failures - 1
        error = FatalConnectionError(
            f"Broker unreachable after {attempts} reconnect attempts: {self._last_error}",
            attempts=attempts,
            last_error=self._last_error,
        )
        self._logger.error("%s", error)
        await self.disconnect()
        self._last_error = error
        if self._on_fatal is not None:
            self._on_fatal(error)
        raise error
