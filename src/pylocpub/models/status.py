"""Session identity, lifecycle states and the observable publisher status."""

from __future__ import annotations

import uuid
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field

from pylocpub.config import PublisherConfig


class ConnectionState(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class PublisherState(StrEnum):
    IDLE = "idle"
    PUBLISHING = "publishing"


class SessionIdentity(BaseModel):
    """Client identifier and broker endpoint of one publishing session.

    Immutable for the lifetime of the session; a new identity is built on
    every ``start()``.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        str_strip_whitespace=True,
    )

    client_id: str = Field(min_length=1)
    host: str = Field(min_length=1)
    port: int = Field(gt=0, lt=65536)
    topic: str = Field(min_length=1)

    @classmethod
    def for_session(cls, config: PublisherConfig) -> SessionIdentity:
        """Identity for a new session, generating a client id when unset."""
        return cls(
            client_id=config.client_id or str(uuid.uuid4()),
            host=config.host,
            port=config.port,
            topic=config.topic,
        )


class PublisherStatus(BaseModel):
    """Snapshot of the controller state for display.

    Parameters
    ----------
    state : PublisherState
        ``idle`` or ``publishing``.
    connection : ConnectionState
        State of the broker connection of the current session.
    samples_sent : int
        Samples acknowledged by the broker since the controller was built.
    samples_lost : int
        Samples evicted on overflow, timed out on enqueue, or dropped
        after exhausting publish retries.
    last_error : str or None
        Human readable description of the most recent failure.
    session : SessionIdentity or None
        Identity of the active session, ``None`` when idle.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    state: PublisherState = PublisherState.IDLE
    connection: ConnectionState = ConnectionState.DISCONNECTED
    samples_sent: int = 0
    samples_lost: int = 0
    last_error: str | None = None
    session: SessionIdentity | None = None
