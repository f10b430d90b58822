"""Data models for pylocpub."""

from pylocpub.models.sample import LocationSample
from pylocpub.models.status import ConnectionState, PublisherState, PublisherStatus, SessionIdentity

__all__ = [
    "ConnectionState",
    "LocationSample",
    "PublisherState",
    "PublisherStatus",
    "SessionIdentity",
]
