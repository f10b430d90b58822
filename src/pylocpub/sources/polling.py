"""Sample source polling a JSON position endpoint over HTTP."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

import aiohttp
from pydantic import ValidationError

from pylocpub.models.sample import LocationSample
from pylocpub.sources.base import (
    AlwaysGranted,
    PermissionProvider,
    SampleCallback,
    UpdateInterval,
    ensure_permission,
)

_logger = logging.getLogger(__name__)


class HttpPollingSampleSource:
    """Polls *url* once per update interval for the current fix.

    The endpoint answers with a JSON object (one fix) or a list of objects.
    Fixes whose timestamp is not newer than the last forwarded one are
    skipped, so a device reporting the same fix twice yields one sample.
    Network and decoding errors are logged and polling continues.

    Usage::

        source = HttpPollingSampleSource("http://phone.local:8080/location")
        await source.start(UpdateInterval(), on_sample)
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        permissions: PermissionProvider | None = None,
        request_timeout: float = 5.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self._url = url
        self._external_session = session is not None
        self._http = session
        self._permissions = permissions or AlwaysGranted()
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)
        self._logger = logger or _logger
        self._task: asyncio.Task[None] | None = None
        self._last_timestamp: int | None = None

    @property
    def is_active(self) -> bool:
        return self._task is not None

    async def start(self, interval: UpdateInterval, on_sample: SampleCallback) -> None:
        """Begin polling.

        Raises
        ------
        PermissionDeniedError
            If the permission provider denies location access.
        """
        ensure_permission(self._permissions)
        if self._task is not None:
            return
        if self._http is None:
            self._http = aiohttp.ClientSession()
        self._last_timestamp = None
        self._task = asyncio.create_task(self._poll(interval, on_sample), name="pylocpub-http-poll")
        self._logger.debug("Polling %s every %.1fs", self._url, interval.seconds)

    async def stop(self) -> None:
        task = self._task
        self._task = None
        try:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        finally:
            if not self._external_session and self._http is not None:
                await self._http.close()
                self._http = None

    async def _poll(self, interval: UpdateInterval, on_sample: SampleCallback) -> None:
        while True:
            try:
                fixes = await self._fetch()
            except (aiohttp.ClientError, TimeoutError, ValueError) as exc:
                # ValueError covers malformed JSON and undecodable bodies.
                self._logger.warning("Location poll of %s failed: %s", self._url, exc)
            else:
                for fix in fixes:
                    self._forward(fix, on_sample)
            await asyncio.sleep(interval.seconds)

    async def _fetch(self) -> list[Any]:
        assert self._http is not None  # noqa: S101
        async with self._http.get(self._url, timeout=self._timeout) as resp:
            raw = await resp.read()
            if resp.status != 200:
                self._logger.warning("Location endpoint returned HTTP %s: %r", resp.status, raw[:200])
                return []
        body = json.loads(raw)
        if isinstance(body, list):
            return body
        return [body]

    def _forward(self, fix: Any, on_sample: SampleCallback) -> None:
        try:
            sample = LocationSample.from_fix(fix)
        except ValidationError as exc:
            self._logger.warning("Skipping invalid location fix: %s", exc.errors(include_url=False))
            return
        if self._last_timestamp is not None and sample.timestamp <= self._last_timestamp:
            return
        self._last_timestamp = sample.timestamp
        try:
            on_sample(sample)
        except Exception:
            self._logger.warning("Sample callback raised for ts=%s", sample.timestamp, exc_info=True)
