"""Location sample sources."""

from pylocpub.sources.base import (
    AlwaysGranted,
    LocationProvider,
    PermissionProvider,
    SampleCallback,
    SampleSource,
    UpdateInterval,
    ensure_permission,
)
from pylocpub.sources.polling import HttpPollingSampleSource
from pylocpub.sources.platform import PlatformSampleSource

__all__ = [
    "AlwaysGranted",
    "HttpPollingSampleSource",
    "LocationProvider",
    "PermissionProvider",
    "PlatformSampleSource",
    "SampleCallback",
    "SampleSource",
    "UpdateInterval",
    "ensure_permission",
]
