"""Publishing lifecycle exposed to the UI layer."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pylocpub._mqtt import MqttTransport
from pylocpub._transport import BrokerTransport
from pylocpub.config import OverflowPolicy, PublisherConfig
from pylocpub.connection import BrokerConnection
from pylocpub.exceptions import AlreadyPublishingError, FatalConnectionError, QueueFullError
from pylocpub.models.sample import LocationSample
from pylocpub.models.status import ConnectionState, PublisherState, PublisherStatus, SessionIdentity
from pylocpub.publish_queue import PublishQueue
from pylocpub.sources.base import SampleSource, UpdateInterval

_logger = logging.getLogger(__name__)

StatusListener = Callable[[PublisherStatus], None]


def _default_transport(config: PublisherConfig) -> BrokerTransport:
    return MqttTransport.from_config(config)


@dataclass(slots=True)
class _Session:
    """Everything owned by one start()/stop() cycle."""

    config: PublisherConfig
    identity: SessionIdentity
    queue: PublishQueue
    loop: asyncio.AbstractEventLoop
    connection: BrokerConnection | None = None
    drain_task: asyncio.Task[None] | None = None
    enqueuers: set[asyncio.Task[None]] = field(default_factory=set)


class PublisherController:
    """Single entry point for starting and stopping location publishing.

    The controller is either ``idle`` or ``publishing``.  Each ``start()``
    builds a fresh session (identity, queue, connection); samples that
    arrive for an older session are discarded.

    Usage::

        controller = PublisherController(source, PublisherConfig(student_id="816034662"))
        controller.subscribe(print)
        await controller.start()
        ...
        await controller.stop()
    """

    def __init__(
        self,
        source: SampleSource,
        config: PublisherConfig | None = None,
        *,
        transport_factory: Callable[[PublisherConfig], BrokerTransport] = _default_transport,
        on_fatal: Callable[[FatalConnectionError], None] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        logger: logging.Logger | None = None,
    ) -> None:
        self._source = source
        self._config = config or PublisherConfig()
        self._transport_factory = transport_factory
        self._on_fatal = on_fatal
        self._sleep = sleep
        self._logger = logger or _logger

        self._state = PublisherState.IDLE
        self._session: _Session | None = None
        self._connection_state = ConnectionState.DISCONNECTED
        self._samples_sent = 0
        self._samples_lost = 0
        self._last_error: str | None = None
        self._listeners: list[StatusListener] = []
        # Disconnects that outlived the stop grace period.
        self._background: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> PublisherController:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def state(self) -> PublisherState:
        return self._state

    @property
    def config(self) -> PublisherConfig:
        return self._config

    @property
    def status(self) -> PublisherStatus:
        """Latest known state and counters."""
        session = self._session
        return PublisherStatus(
            state=self._state,
            connection=self._connection_state,
            samples_sent=self._samples_sent,
            samples_lost=self._samples_lost,
            last_error=self._last_error,
            session=session.identity if session is not None else None,
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Call *listener* with every new status; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        status = self.status
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                self._logger.debug("Status listener raised", exc_info=True)

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    async def start(self, config: PublisherConfig | None = None) -> None:
        """Begin publishing location samples.

        Raises
        ------
        AlreadyPublishingError
            If a session is already active; it is left untouched.
        PermissionDeniedError
            If the sample source has no location permission.
        """
        # Check-and-set with no await in between.
        if self._state is PublisherState.PUBLISHING:
            raise AlreadyPublishingError("Already publishing; call stop() first")
        self._state = PublisherState.PUBLISHING

        if config is not None:
            self._config = config
        cfg = self._config
        session = _Session(
            config=cfg,
            identity=SessionIdentity.for_session(cfg),
            queue=PublishQueue(cfg.queue_capacity, cfg.overflow_policy, put_timeout=cfg.enqueue_timeout),
            loop=asyncio.get_running_loop(),
        )
        session.connection = self._build_connection(session)
        self._session = session
        self._last_error = None
        self._connection_state = ConnectionState.DISCONNECTED
        self._notify()

        try:
            await self._source.start(UpdateInterval.from_config(cfg), functools.partial(self._on_sample, session))
        except Exception as exc:
            if self._session is session:
                self._session = None
                self._state = PublisherState.IDLE
                self._last_error = str(exc)
                self._notify()
            self._logger.warning("Could not start publishing: %s", exc)
            raise

        if self._session is not session:
            # stop() ran while the source was starting.
            await self._source.stop()
            return

        session.drain_task = session.loop.create_task(self._run_session(session), name="pylocpub-drain")
        self._logger.info(
            "Started publishing to %s:%s topic=%s client_id=%s",
            session.identity.host,
            session.identity.port,
            session.identity.topic,
            session.identity.client_id,
        )

    async def stop(self) -> None:
        """Stop publishing. Idempotent; returns within the stop grace period."""
        session = self._session
        if session is None:
            return
        await self._teardown(session)

    def _build_connection(self, session: _Session) -> BrokerConnection:
        cfg = session.config
        return BrokerConnection(
            self._transport_factory(cfg),
            session.identity,
            student_id=cfg.student_id,
            connect_timeout=cfg.connect_timeout,
            max_reconnect_attempts=cfg.max_reconnect_attempts,
            max_publish_retries=cfg.max_publish_retries,
            backoff_initial=cfg.backoff_initial_ms / 1000.0,
            backoff_max=cfg.backoff_max_ms / 1000.0,
            batch_size=cfg.batch_size,
            on_state_change=functools.partial(self._on_connection_state, session),
            on_published=functools.partial(self._on_published, session),
            on_lost=functools.partial(self._on_lost, session),
            on_fatal=functools.partial(self._on_connection_fatal, session),
            sleep=self._sleep,
            logger=self._logger,
        )

    async def _teardown(self, session: _Session) -> None:
        if self._session is not session:
            return
        self._session = None
        self._state = PublisherState.IDLE
        self._notify()

        loop = session.loop
        deadline = loop.time() + session.config.stop_grace

        def _remaining() -> float:
            return max(deadline - loop.time(), 0.0)

        try:
            async with asyncio.timeout(_remaining()):
                await self._source.stop()
        except TimeoutError:
            self._logger.warning("Sample source did not stop within the grace period")
        except Exception:
            self._logger.warning("Sample source stop raised", exc_info=True)

        current = asyncio.current_task()
        tasks = [
            task
            for task in (session.drain_task, *session.enqueuers)
            if task is not None and task is not current and not task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            _done, pending = await asyncio.wait(tasks, timeout=_remaining())
            if pending:
                self._logger.warning("%d publishing tasks still cancelling after grace period", len(pending))

        assert session.connection is not None  # noqa: S101
        disconnect = loop.create_task(session.connection.disconnect())
        _done, pending = await asyncio.wait({disconnect}, timeout=_remaining())
        if pending:
            self._logger.warning("Broker disconnect still running after grace period; continuing in background")
            self._background.add(disconnect)
            disconnect.add_done_callback(self._background.discard)

        dropped = session.queue.clear()
        if dropped:
            self._logger.info("Discarded %d unsent samples", dropped)
        self._connection_state = ConnectionState.DISCONNECTED
        self._notify()
        self._logger.info("Stopped publishing")

    async def _run_session(self, session: _Session) -> None:
        assert session.connection is not None  # noqa: S101
        try:
            await session.connection.run(session.queue)
        except FatalConnectionError:
            # on_fatal already recorded the error.
            await self._teardown(session)
        except Exception as exc:
            self._logger.exception("Drain loop crashed")
            if self._session is session:
                self._last_error = f"Drain loop crashed: {exc}"
            await self._teardown(session)

    # ------------------------------------------------------------------
    # Sample intake (any thread)
    # ------------------------------------------------------------------

    def _on_sample(self, session: _Session, sample: LocationSample) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is session.loop:
            self._accept(session, sample)
            return
        try:
            session.loop.call_soon_threadsafe(self._accept, session, sample)
        except RuntimeError:
            self._logger.debug("Event loop closed; dropping sample ts=%s", sample.timestamp)

    def _accept(self, session: _Session, sample: LocationSample) -> None:
        if self._session is not session:
            return
        if session.queue.policy is OverflowPolicy.DROP_OLDEST:
            if session.queue.put_nowait(sample) is not None:
                self._samples_lost += 1
                self._notify()
            return
        task = session.loop.create_task(self._enqueue_blocking(session, sample))
        session.enqueuers.add(task)
        task.add_done_callback(session.enqueuers.discard)

    async def _enqueue_blocking(self, session: _Session, sample: LocationSample) -> None:
        try:
            await session.queue.put(sample, timeout=session.config.enqueue_timeout)
        except QueueFullError as exc:
            if self._session is not session:
                return
            self._logger.warning("Dropping sample ts=%s: %s", sample.timestamp, exc)
            self._samples_lost += 1
            self._last_error = str(exc)
            self._notify()

    # ------------------------------------------------------------------
    # Connection callbacks
    # ------------------------------------------------------------------

    def _on_connection_state(self, session: _Session, state: ConnectionState) -> None:
        if self._session is not session:
            return
        self._connection_state = state
        if state is ConnectionState.FAILED and session.connection is not None:
            error = session.connection.last_error
            if error is not None:
                self._last_error = str(error)
        self._notify()

    def _on_published(self, session: _Session, _sample: LocationSample) -> None:
        if self._session is not session:
            return
        self._samples_sent += 1
        self._notify()

    def _on_lost(self, session: _Session, _sample: LocationSample, reason: str) -> None:
        if self._session is not session:
            return
        self._samples_lost += 1
        self._last_error = reason
        self._notify()

    def _on_connection_fatal(self, session: _Session, error: FatalConnectionError) -> None:
        if self._session is not session:
            return
        self._last_error = str(error)
        self._notify()
        if self._on_fatal is not None:
            try:
                self._on_fatal(error)
            except Exception:
                self._logger.debug("on_fatal callback raised", exc_info=True)
