"""Sample source protocols and the platform collaborators they wrap."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pylocpub.config import PublisherConfig
from pylocpub.exceptions import PermissionDeniedError
from pylocpub.models.sample import LocationSample

SampleCallback = Callable[[LocationSample], None]


@dataclass(frozen=True, slots=True)
class UpdateInterval:
    """Requested fix cadence: preferred interval and the fastest accepted."""

    interval_ms: int = 5_000
    min_interval_ms: int = 2_000

    @classmethod
    def from_config(cls, config: PublisherConfig) -> UpdateInterval:
        return cls(interval_ms=config.update_interval_ms, min_interval_ms=config.min_update_interval_ms)

    @property
    def seconds(self) -> float:
        return self.interval_ms / 1000.0


class SampleSource(Protocol):
    """Producer of location samples.

    ``on_sample`` may be invoked from any thread.  ``stop`` is idempotent and
    no callback is made after it returns.
    """

    async def start(self, interval: UpdateInterval, on_sample: SampleCallback) -> None:
        ...

    async def stop(self) -> None:
        ...


class PermissionProvider(Protocol):
    def check_permission(self) -> bool:
        ...

    def request_permission(self) -> bool:
        ...


class LocationProvider(Protocol):
    """Platform location API delivering raw fixes to a callback."""

    def request_updates(self, interval_ms: int, min_interval_ms: int, callback: Callable[[Any], None]) -> None:
        ...

    def remove_updates(self) -> None:
        ...


class AlwaysGranted:
    """Permission provider for hosts without a permission model."""

    def check_permission(self) -> bool:
        return True

    def request_permission(self) -> bool:
        return True


def ensure_permission(permissions: PermissionProvider) -> None:
    """Check location permission, asking for it once when absent.

    Raises
    ------
    PermissionDeniedError
        If permission is still absent after the request.
    """
    if permissions.check_permission():
        return
    if permissions.request_permission() and permissions.check_permission():
        return
    raise PermissionDeniedError("Location permission not granted")
