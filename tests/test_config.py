from __future__ import annotations

import pytest

from pylocpub.config import OverflowPolicy, PublisherConfig
from pylocpub.exceptions import PublisherConfigError


def test_defaults() -> None:
    config = PublisherConfig()
    assert config.port == 1883
    assert config.topic == "assignment/location"
    assert config.update_interval_ms == 5000
    assert config.min_update_interval_ms == 2000
    assert config.overflow_policy is OverflowPolicy.DROP_OLDEST
    assert config.connect_timeout == 10.0
    assert config.stop_grace == 2.0


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOCPUB_HOST", "broker.example")
    monkeypatch.setenv("LOCPUB_PORT", "8883")
    monkeypatch.setenv("LOCPUB_STUDENT_ID", "816034662")
    monkeypatch.setenv("LOCPUB_OVERFLOW_POLICY", "block")
    monkeypatch.setenv("LOCPUB_QUEUE_CAPACITY", "7")
    monkeypatch.setenv("LOCPUB_TLS", "yes")

    config = PublisherConfig.from_env()

    assert config.host == "broker.example"
    assert config.port == 8883
    assert config.student_id == "816034662"
    assert config.overflow_policy is OverflowPolicy.BLOCK
    assert config.queue_capacity == 7
    assert config.tls is True


def test_overrides_beat_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOCPUB_HOST", "from-env")
    monkeypatch.setenv("LOCPUB_PORT", "not-a-number")

    config = PublisherConfig.from_env(host="explicit", port=1884)

    assert config.host == "explicit"
    assert config.port == 1884


def test_bad_integer_in_env_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LOCPUB_QUEUE_CAPACITY", "lots")
    with pytest.raises(PublisherConfigError):
        PublisherConfig.from_env()


@pytest.mark.parametrize(
    "kwargs",
    [
        {"host": " "},
        {"port": 0},
        {"topic": "assignment/#"},
        {"student_id": "a|b"},
        {"queue_capacity": 0},
        {"qos": 3},
        {"backoff_initial_ms": 5000, "backoff_max_ms": 1000},
        {"min_update_interval_ms": 6000},
        {"stop_grace_ms": 0},
        {"overflow_policy": "drop_newest"},
    ],
)
def test_invalid_values_rejected(kwargs: dict[str, object]) -> None:
    with pytest.raises(PublisherConfigError):
        PublisherConfig(**kwargs)  # type: ignore[arg-type]


def test_password_hidden_from_repr() -> None:
    assert "hunter2" not in repr(PublisherConfig(username="u", password="hunter2"))
