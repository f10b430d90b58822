"""Transport boundary between the broker connection and a pub/sub library."""

from __future__ import annotations

from typing import Protocol

from pylocpub.models.status import SessionIdentity


class BrokerTransport(Protocol):
    """Structural transport interface used by :class:`BrokerConnection`.

    Having a protocol here makes it easy to pass test doubles while keeping
    the production implementation (`MqttTransport`) concrete.

    ``connect`` raises :class:`~pylocpub.exceptions.BrokerConnectError` and
    ``publish`` raises :class:`~pylocpub.exceptions.BrokerPublishError`;
    ``disconnect`` may raise anything, callers treat it as best-effort.
    """

    async def connect(self, identity: SessionIdentity, *, timeout: float) -> None:
        ...

    async def publish(self, topic: str, payload: bytes) -> None:
        ...

    async def disconnect(self) -> None:
        ...
