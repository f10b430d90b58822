"""Sample source backed by a platform location API."""

from __future__ import annotations

import logging
import threading
from typing import Any

from pydantic import ValidationError

from pylocpub.models.sample import LocationSample
from pylocpub.sources.base import (
    LocationProvider,
    PermissionProvider,
    SampleCallback,
    UpdateInterval,
    ensure_permission,
)

_logger = logging.getLogger(__name__)


class PlatformSampleSource:
    """Adapts a :class:`LocationProvider` callback into validated samples.

    The provider may deliver a single fix or a batch (a list or tuple);
    batches are forwarded in delivery order.  Fixes that fail
    validation are logged and skipped.
    """

    def __init__(
        self,
        provider: LocationProvider,
        permissions: PermissionProvider,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._provider = provider
        self._permissions = permissions
        self._logger = logger or _logger
        self._lock = threading.RLock()
        self._on_sample: SampleCallback | None = None

    @property
    def is_active(self) -> bool:
        return self._on_sample is not None

    async def start(self, interval: UpdateInterval, on_sample: SampleCallback) -> None:
        """Request periodic fixes from the provider.

        Raises
        ------
        PermissionDeniedError
            If location permission is absent and not granted on request.
        """
        ensure_permission(self._permissions)
        with self._lock:
            if self._on_sample is not None:
                return
            self._on_sample = on_sample
        try:
            self._provider.request_updates(interval.interval_ms, interval.min_interval_ms, self._handle_fixes)
        except Exception:
            with self._lock:
                if self._on_sample is on_sample:
                    self._on_sample = None
            raise
        self._logger.debug(
            "Location updates requested interval=%dms min_interval=%dms",
            interval.interval_ms,
            interval.min_interval_ms,
        )

    async def stop(self) -> None:
        with self._lock:
            if self._on_sample is None:
                return
            self._on_sample = None
        try:
            self._provider.remove_updates()
        finally:
            self._logger.debug("Location updates removed")

    def _handle_fixes(self, fixes: Any) -> None:
        if isinstance(fixes, (list, tuple)):
            batch = list(fixes)
        else:
            batch = [fixes]
        for fix in batch:
            try:
                sample = LocationSample.from_fix(fix)
            except ValidationError as exc:
                self._logger.warning("Skipping invalid location fix: %s", exc.errors(include_url=False))
                continue
            # Read under the lock so no callback escapes after stop().
            with self._lock:
                callback = self._on_sample
                if callback is None:
                    return
                callback(sample)
