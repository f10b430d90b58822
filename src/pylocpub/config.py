"""Publisher configuration for pylocpub."""

from __future__ import annotations

import dataclasses
import os
from enum import StrEnum
from typing import Any

from pylocpub.exceptions import PublisherConfigError

#: Topic the location publisher app writes to.
DEFAULT_TOPIC = "assignment/location"

# Characters that would break the single-line pipe-delimited payload.
_FORBIDDEN_ID_CHARS = frozenset("|\r\n")


class OverflowPolicy(StrEnum):
    """What the publish queue does when a sample arrives at capacity."""

    DROP_OLDEST = "drop_oldest"
    BLOCK = "block"


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class PublisherConfig:
    """Publisher configuration.

    Parameters
    ----------
    host : str
        Broker host name.
    port : int
        Broker port.
    client_id : str or None
        MQTT client identifier.  ``None`` generates a fresh UUID for
        every publishing session.
    topic : str
        Topic every sample is published on.
    student_id : str
        Identifier written as the first field of every payload.
        Must not contain ``|`` or line breaks.
    connect_timeout_ms : int
        Time allowed for a single connect attempt (socket + CONNACK).
    max_reconnect_attempts : int
        Consecutive connect/publish failures tolerated before the
        connection is declared fatally failed.
    queue_capacity : int
        Maximum number of samples buffered between the location source
        and the network.
    overflow_policy : OverflowPolicy
        ``drop_oldest`` evicts the head when full, ``block`` makes the
        producer wait up to ``enqueue_timeout_ms``.
    enqueue_timeout_ms : int
        Wait bound for producers under the ``block`` policy.
    max_publish_retries : int
        Times a single sample is retried after a failed publish before
        it is dropped and counted as lost.
    publish_timeout_ms : int
        Time allowed for a broker acknowledgement of one publish.
    backoff_initial_ms : int
        First reconnect delay.  Doubles on every consecutive failure.
    backoff_max_ms : int
        Cap for the reconnect delay.
    stop_grace_ms : int
        Upper bound for ``stop()`` to cancel in-flight work.
    batch_size : int
        Maximum samples taken from the queue per drain iteration.
    update_interval_ms : int
        Requested interval between location fixes.
    min_update_interval_ms : int
        Fastest interval the location source may deliver fixes at.
    keepalive : int
        MQTT keepalive in seconds.
    qos : int
        MQTT QoS level for publishes (0, 1 or 2).
    username : str or None
        Optional broker username.
    password : str or None
        Optional broker password.
    tls : bool
        Use the system CA bundle to wrap the broker connection in TLS.
    """

    host: str = "localhost"
    port: int = 1883
    client_id: str | None = None
    topic: str = DEFAULT_TOPIC
    student_id: str = ""
    connect_timeout_ms: int = 10_000
    max_reconnect_attempts: int = 5
    queue_capacity: int = 50
    overflow_policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST
    enqueue_timeout_ms: int = 5_000
    max_publish_retries: int = 3
    publish_timeout_ms: int = 10_000
    backoff_initial_ms: int = 1_000
    backoff_max_ms: int = 30_000
    stop_grace_ms: int = 2_000
    batch_size: int = 10
    update_interval_ms: int = 5_000
    min_update_interval_ms: int = 2_000
    keepalive: int = 60
    qos: int = 1
    username: str | None = None
    password: str | None = dataclasses.field(default=None, repr=False)
    tls: bool = False

    def __post_init__(self) -> None:
        if not self.host.strip():
            raise PublisherConfigError("host must be non-empty")
        if not 0 < self.port < 65536:
            raise PublisherConfigError(f"port out of range: {self.port}")
        if not self.topic or any(ch in self.topic for ch in "+#"):
            raise PublisherConfigError(f"invalid publish topic: {self.topic!r}")
        if _FORBIDDEN_ID_CHARS & set(self.student_id):
            raise PublisherConfigError("student_id must not contain '|' or line breaks")
        if self.client_id is not None and not self.client_id.strip():
            raise PublisherConfigError("client_id must be non-empty when given")
        if self.queue_capacity < 1:
            raise PublisherConfigError("queue_capacity must be at least 1")
        if self.batch_size < 1:
            raise PublisherConfigError("batch_size must be at least 1")
        if self.max_reconnect_attempts < 0 or self.max_publish_retries < 0:
            raise PublisherConfigError("retry limits must not be negative")
        if self.qos not in (0, 1, 2):
            raise PublisherConfigError(f"qos must be 0, 1 or 2, got {self.qos}")
        if self.backoff_initial_ms <= 0 or self.backoff_max_ms < self.backoff_initial_ms:
            raise PublisherConfigError("backoff_max_ms must be >= backoff_initial_ms > 0")
        if self.min_update_interval_ms > self.update_interval_ms:
            raise PublisherConfigError("min_update_interval_ms must not exceed update_interval_ms")
        for name in ("connect_timeout_ms", "enqueue_timeout_ms", "publish_timeout_ms", "stop_grace_ms"):
            if getattr(self, name) <= 0:
                raise PublisherConfigError(f"{name} must be positive")
        # Accept plain strings, e.g. from env or JSON.
        if not isinstance(self.overflow_policy, OverflowPolicy):
            try:
                policy = OverflowPolicy(str(self.overflow_policy).strip().lower())
            except ValueError as exc:
                raise PublisherConfigError(f"unknown overflow policy: {self.overflow_policy!r}") from exc
            object.__setattr__(self, "overflow_policy", policy)

    @property
    def connect_timeout(self) -> float:
        return self.connect_timeout_ms / 1000.0

    @property
    def enqueue_timeout(self) -> float:
        return self.enqueue_timeout_ms / 1000.0

    @property
    def publish_timeout(self) -> float:
        return self.publish_timeout_ms / 1000.0

    @property
    def stop_grace(self) -> float:
        return self.stop_grace_ms / 1000.0

    @classmethod
    def from_env(cls, **overrides: Any) -> PublisherConfig:
        """Create configuration from environment variables.

        Reads ``LOCPUB_HOST``, ``LOCPUB_PORT``, ``LOCPUB_STUDENT_ID`` and
        the other ``LOCPUB_*`` variables named after the fields.
        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        PublisherConfig
            Populated configuration.

        Raises
        ------
        PublisherConfigError
            If a numeric variable cannot be parsed or a value is invalid.
        """
        env = os.environ

        _ENV_STR_MAP = {
            "LOCPUB_HOST": "host",
            "LOCPUB_CLIENT_ID": "client_id",
            "LOCPUB_TOPIC": "topic",
            "LOCPUB_STUDENT_ID": "student_id",
            "LOCPUB_OVERFLOW_POLICY": "overflow_policy",
            "LOCPUB_USERNAME": "username",
            "LOCPUB_PASSWORD": "password",
        }
        _ENV_INT_MAP = {
            "LOCPUB_PORT": "port",
            "LOCPUB_CONNECT_TIMEOUT_MS": "connect_timeout_ms",
            "LOCPUB_MAX_RECONNECT_ATTEMPTS": "max_reconnect_attempts",
            "LOCPUB_QUEUE_CAPACITY": "queue_capacity",
            "LOCPUB_ENQUEUE_TIMEOUT_MS": "enqueue_timeout_ms",
            "LOCPUB_MAX_PUBLISH_RETRIES": "max_publish_retries",
            "LOCPUB_PUBLISH_TIMEOUT_MS": "publish_timeout_ms",
            "LOCPUB_BACKOFF_INITIAL_MS": "backoff_initial_ms",
            "LOCPUB_BACKOFF_MAX_MS": "backoff_max_ms",
            "LOCPUB_STOP_GRACE_MS": "stop_grace_ms",
            "LOCPUB_BATCH_SIZE": "batch_size",
            "LOCPUB_UPDATE_INTERVAL_MS": "update_interval_ms",
            "LOCPUB_MIN_UPDATE_INTERVAL_MS": "min_update_interval_ms",
            "LOCPUB_KEEPALIVE": "keepalive",
            "LOCPUB_QOS": "qos",
        }

        config_kwargs: dict[str, Any] = {}
        for env_key, field_name in _ENV_STR_MAP.items():
            val = env.get(env_key)
            if val is not None and field_name not in overrides:
                config_kwargs[field_name] = val

        for env_key, field_name in _ENV_INT_MAP.items():
            val = env.get(env_key)
            if val is None or field_name in overrides:
                continue
            try:
                config_kwargs[field_name] = int(val)
            except ValueError as exc:
                raise PublisherConfigError(f"{env_key} is not an integer: {val!r}") from exc

        if "tls" not in overrides:
            config_kwargs["tls"] = _env_bool(env.get("LOCPUB_TLS"), False)

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
