from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Any

import paho.mqtt.client as mqtt
import pytest

from pylocpub import _mqtt
from pylocpub._mqtt import MqttTransport
from pylocpub.exceptions import BrokerConnectError, BrokerPublishError
from pylocpub.models.status import SessionIdentity

_IDENTITY = SessionIdentity(client_id="phone-1", host="broker.test", port=1883, topic="assignment/location")

_SUCCESS = 0
_NOT_AUTHORIZED = 0x87


@dataclass
class _Info:
    rc: int
    mid: int


class _FakeClient:
    """Stand-in for ``paho.mqtt.client.Client``; callbacks fire on a worker thread."""

    instances: list[_FakeClient] = []
    connack_code: int = _SUCCESS
    puback_code: int | None = _SUCCESS
    connect_error: Exception | None = None

    def __init__(self, **kwargs: Any) -> None:
        self.kwargs = kwargs
        self.on_connect: Any = None
        self.on_publish: Any = None
        self.on_disconnect: Any = None
        self.credentials: tuple[str, str | None] | None = None
        self.tls = False
        self.published: list[tuple[str, bytes, int]] = []
        self.disconnected = False
        self.loop_stopped = False
        self._next_mid = 0
        _FakeClient.instances.append(self)

    def enable_logger(self, _logger: Any) -> None:
        pass

    def username_pw_set(self, username: str, password: str | None) -> None:
        self.credentials = (username, password)

    def tls_set(self) -> None:
        self.tls = True

    def connect(self, host: str, port: int, keepalive: int = 60) -> int:
        if self.connect_error is not None:
            raise self.connect_error
        self.target = (host, port, keepalive)
        return 0

    def loop_start(self) -> None:
        code = self.connack_code
        self._fire(lambda: self.on_connect(self, None, {}, code, None))

    def publish(self, topic: str, payload: bytes, qos: int = 0) -> _Info:
        self._next_mid += 1
        mid = self._next_mid
        self.published.append((topic, payload, qos))
        code = self.puback_code
        if code is not None:
            self._fire(lambda: self.on_publish(self, None, mid, code, None))
        return _Info(rc=mqtt.MQTT_ERR_SUCCESS, mid=mid)

    def drop(self) -> None:
        self._fire(lambda: self.on_disconnect(self, None, None, 0x80, None))

    def disconnect(self) -> None:
        self.disconnected = True

    def loop_stop(self) -> None:
        self.loop_stopped = True

    @staticmethod
    def _fire(callback: Any) -> None:
        thread = threading.Thread(target=callback)
        thread.start()
        thread.join()


@pytest.fixture
def fake_client(monkeypatch: pytest.MonkeyPatch) -> type[_FakeClient]:
    _FakeClient.instances = []
    _FakeClient.connack_code = _SUCCESS
    _FakeClient.puback_code = _SUCCESS
    _FakeClient.connect_error = None
    monkeypatch.setattr(_mqtt.mqtt, "Client", _FakeClient)
    return _FakeClient


@pytest.mark.asyncio
async def test_connect_publish_disconnect(fake_client: type[_FakeClient]) -> None:
    transport = MqttTransport(keepalive=30, qos=1, username="student", password="pw")

    await transport.connect(_IDENTITY, timeout=1.0)
    assert transport.is_connected
    client = fake_client.instances[0]
    assert client.kwargs["client_id"] == "phone-1"
    assert client.kwargs["protocol"] == mqtt.MQTTv5
    assert client.target == ("broker.test", 1883, 30)
    assert client.credentials == ("student", "pw")

    await transport.publish("assignment/location", b"816034662|3.60|1|10.000000|-61.000000")
    assert client.published == [("assignment/location", b"816034662|3.60|1|10.000000|-61.000000", 1)]

    await transport.disconnect()
    assert not transport.is_connected
    assert client.disconnected and client.loop_stopped


@pytest.mark.asyncio
async def test_refused_connack_raises_connect_error(fake_client: type[_FakeClient]) -> None:
    fake_client.connack_code = _NOT_AUTHORIZED
    transport = MqttTransport()

    with pytest.raises(BrokerConnectError, match="refused"):
        await transport.connect(_IDENTITY, timeout=1.0)

    assert not transport.is_connected
    assert fake_client.instances[0].loop_stopped


@pytest.mark.asyncio
async def test_socket_error_raises_connect_error_with_cause(fake_client: type[_FakeClient]) -> None:
    fake_client.connect_error = ConnectionRefusedError("connection refused")
    transport = MqttTransport()

    with pytest.raises(BrokerConnectError) as excinfo:
        await transport.connect(_IDENTITY, timeout=1.0)

    assert isinstance(excinfo.value.cause, ConnectionRefusedError)


@pytest.mark.asyncio
async def test_publish_without_connection_fails() -> None:
    transport = MqttTransport()
    with pytest.raises(BrokerPublishError, match="Not connected"):
        await transport.publish("assignment/location", b"x")


@pytest.mark.asyncio
async def test_rejected_puback_raises_publish_error(fake_client: type[_FakeClient]) -> None:
    fake_client.puback_code = _NOT_AUTHORIZED
    transport = MqttTransport()
    await transport.connect(_IDENTITY, timeout=1.0)

    with pytest.raises(BrokerPublishError, match="rejected"):
        await transport.publish("assignment/location", b"x")


@pytest.mark.asyncio
async def test_missing_puback_times_out(fake_client: type[_FakeClient]) -> None:
    fake_client.puback_code = None
    transport = MqttTransport(publish_timeout=0.05)
    await transport.connect(_IDENTITY, timeout=1.0)

    with pytest.raises(BrokerPublishError, match="No acknowledgement"):
        await transport.publish("assignment/location", b"x")


@pytest.mark.asyncio
async def test_connection_loss_fails_inflight_publish(fake_client: type[_FakeClient]) -> None:
    fake_client.puback_code = None
    transport = MqttTransport(publish_timeout=5.0)
    await transport.connect(_IDENTITY, timeout=1.0)

    pending = asyncio.create_task(transport.publish("assignment/location", b"x"))
    await asyncio.sleep(0.01)
    fake_client.instances[0].drop()

    with pytest.raises(BrokerPublishError, match="Connection lost"):
        await pending
    assert not transport.is_connected
