"""paho-mqtt implementation of the broker transport."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, cast

import paho.mqtt.client as mqtt

from pylocpub.config import PublisherConfig
from pylocpub.exceptions import BrokerConnectError, BrokerPublishError
from pylocpub.models.status import SessionIdentity

_logger = logging.getLogger(__name__)


def _is_failure(reason_code: Any) -> bool:
    # MQTT v5 reason codes >= 0x80 are failures; 0x10 "no matching
    # subscribers" is a successful PUBACK.
    failure = getattr(reason_code, "is_failure", None)
    if failure is not None:
        return bool(failure)
    return int(getattr(reason_code, "value", reason_code)) >= 0x80


def _close_client(client: mqtt.Client) -> None:
    try:
        client.disconnect()
    finally:
        client.loop_stop()


class MqttTransport:
    """Threaded paho-mqtt client bridged onto the asyncio loop.

    paho runs its network loop on a background thread. CONNACK, PUBACK and
    disconnect callbacks are handed to the event loop with
    ``call_soon_threadsafe`` and resolve the futures awaited by
    :meth:`connect` and :meth:`publish`.  A fresh paho client is built for
    every connect so a reconnect never inherits state from a broken one.
    """

    def __init__(
        self,
        *,
        keepalive: int = 60,
        qos: int = 1,
        publish_timeout: float = 10.0,
        username: str | None = None,
        password: str | None = None,
        tls: bool = False,
        logger: logging.Logger | None = None,
    ) -> None:
        self._keepalive = keepalive
        self._qos = qos
        self._publish_timeout = publish_timeout
        self._username = username
        self._password = password
        self._tls = tls
        self._logger = logger or _logger
        self._client: mqtt.Client | None = None
        self._connected = False
        self._inflight: dict[int, asyncio.Future[None]] = {}

    @classmethod
    def from_config(cls, config: PublisherConfig, *, logger: logging.Logger | None = None) -> MqttTransport:
        return cls(
            keepalive=config.keepalive,
            qos=config.qos,
            publish_timeout=config.publish_timeout,
            username=config.username,
            password=config.password,
            tls=config.tls,
            logger=logger,
        )

    @property
    def is_connected(self) -> bool:
        """Whether a CONNACK was received and no disconnect seen since."""
        return self._client is not None and self._connected

    async def connect(self, identity: SessionIdentity, *, timeout: float) -> None:
        """Open a connection and wait for a successful CONNACK.

        Raises
        ------
        BrokerConnectError
            If the socket cannot be opened, the broker refuses the client
            (e.g. identifier rejected), or *timeout* elapses.
        """
        if self._client is not None:
            await self.disconnect()

        loop = asyncio.get_running_loop()
        connack: asyncio.Future[None] = loop.create_future()

        client = mqtt.Client(
            callback_api_version=cast(Any, mqtt).CallbackAPIVersion.VERSION2,
            client_id=identity.client_id,
            protocol=mqtt.MQTTv5,
        )
        client.enable_logger(self._logger)
        if self._username is not None:
            client.username_pw_set(self._username, self._password)
        if self._tls:
            client.tls_set()

        def on_connect(_c: mqtt.Client, _userdata: Any, _flags: Any, reason_code: Any, _properties: Any) -> None:
            loop.call_soon_threadsafe(self._handle_connack, connack, reason_code)

        def on_publish(_c: mqtt.Client, _userdata: Any, mid: int, reason_code: Any, _properties: Any) -> None:
            loop.call_soon_threadsafe(self._handle_puback, mid, reason_code)

        def on_disconnect(
            _c: mqtt.Client,
            _userdata: Any,
            _disconnect_flags: Any,
            reason_code: Any,
            _properties: Any,
        ) -> None:
            loop.call_soon_threadsafe(self._handle_disconnect, client, reason_code)

        client.on_connect = on_connect
        client.on_publish = on_publish
        client.on_disconnect = on_disconnect

        self._client = client
        self._logger.debug(
            "MQTT connect requested host=%s port=%s client_id=%s",
            identity.host,
            identity.port,
            identity.client_id,
        )
        try:
            async with asyncio.timeout(timeout):
                await loop.run_in_executor(
                    None,
                    functools.partial(client.connect, identity.host, identity.port, keepalive=self._keepalive),
                )
                client.loop_start()
                await connack
        except TimeoutError as exc:
            await self._discard(client)
            raise BrokerConnectError(
                f"Connect to {identity.host}:{identity.port} timed out after {timeout:.1f}s",
                cause=exc,
            ) from exc
        except BrokerConnectError:
            await self._discard(client)
            raise
        except (OSError, ValueError) as exc:
            await self._discard(client)
            raise BrokerConnectError(f"Connect to {identity.host}:{identity.port} failed: {exc}", cause=exc) from exc
        except asyncio.CancelledError:
            if self._client is client:
                self._client = None
            loop.run_in_executor(None, _close_client, client)
            raise

        self._connected = True
        self._logger.debug("MQTT connected to %s:%s", identity.host, identity.port)

    async def publish(self, topic: str, payload: bytes) -> None:
        """Publish *payload* and wait until the broker acknowledges it.

        Raises
        ------
        BrokerPublishError
            If not connected, paho rejects the message, the broker returns
            a failure reason code, the connection drops, or no
            acknowledgement arrives within the publish timeout.
        """
        client = self._client
        if client is None or not self._connected:
            raise BrokerPublishError("Not connected to broker")

        info = client.publish(topic, payload, qos=self._qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerPublishError(f"Publish rejected by client: {mqtt.error_string(info.rc)}")

        # The PUBACK callback is marshalled onto this loop, so registering
        # the waiter before the next await cannot miss it.
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._inflight[info.mid] = waiter
        try:
            async with asyncio.timeout(self._publish_timeout):
                await waiter
        except TimeoutError as exc:
            raise BrokerPublishError(
                f"No acknowledgement for mid={info.mid} within {self._publish_timeout:.1f}s",
                cause=exc,
            ) from exc
        finally:
            self._inflight.pop(info.mid, None)

    async def disconnect(self) -> None:
        """Disconnect and stop the network loop of the current client."""
        client = self._client
        self._client = None
        self._connected = False
        self._fail_inflight("Transport disconnected")
        if client is None:
            return
        self._logger.debug("MQTT disconnect requested")
        await asyncio.get_running_loop().run_in_executor(None, _close_client, client)
        self._logger.debug("MQTT network loop stopped")

    # ------------------------------------------------------------------
    # Callbacks (run on the event loop)
    # ------------------------------------------------------------------

    def _handle_connack(self, connack: asyncio.Future[None], reason_code: Any) -> None:
        if connack.done():
            return
        if _is_failure(reason_code):
            self._logger.warning("MQTT connect refused: %s", reason_code)
            connack.set_exception(BrokerConnectError(f"Broker refused connection: {reason_code}"))
            return
        connack.set_result(None)

    def _handle_puback(self, mid: int, reason_code: Any) -> None:
        waiter = self._inflight.get(mid)
        if waiter is None or waiter.done():
            return
        if _is_failure(reason_code):
            waiter.set_exception(BrokerPublishError(f"Broker rejected publish mid={mid}: {reason_code}"))
        else:
            waiter.set_result(None)

    def _handle_disconnect(self, client: mqtt.Client, reason_code: Any) -> None:
        if client is not self._client:
            return
        if self._connected:
            self._logger.info("MQTT disconnected: %s", reason_code)
        self._connected = False
        self._fail_inflight(f"Connection lost: {reason_code}")

    def _fail_inflight(self, reason: str) -> None:
        pending = list(self._inflight.values())
        self._inflight.clear()
        for waiter in pending:
            if not waiter.done():
                waiter.set_exception(BrokerPublishError(reason))

    async def _discard(self, client: mqtt.Client) -> None:
        if self._client is client:
            self._client = None
        self._connected = False
        try:
            await asyncio.get_running_loop().run_in_executor(None, _close_client, client)
        except Exception:
            self._logger.debug("MQTT cleanup after failed connect raised", exc_info=True)
