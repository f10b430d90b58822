"""pylocpub - Stream device location samples to an MQTT broker."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pylocpub")
except PackageNotFoundError:
    __version__ = "0+local"

from pylocpub._mqtt import MqttTransport
from pylocpub.config import DEFAULT_TOPIC, OverflowPolicy, PublisherConfig
from pylocpub.connection import BrokerConnection, backoff_delay
from pylocpub.controller import PublisherController
from pylocpub.exceptions import (
    AlreadyPublishingError,
    BrokerConnectError,
    BrokerPublishError,
    FatalConnectionError,
    PayloadFormatError,
    PermissionDeniedError,
    PublisherConfigError,
    PublisherError,
    QueueEmptyError,
    QueueFullError,
)
from pylocpub.models import (
    ConnectionState,
    LocationSample,
    PublisherState,
    PublisherStatus,
    SessionIdentity,
)
from pylocpub.payload import PublishedLocation, decode_payload, encode_payload
from pylocpub.publish_queue import PublishQueue
from pylocpub.sources import (
    AlwaysGranted,
    HttpPollingSampleSource,
    PlatformSampleSource,
    SampleSource,
    UpdateInterval,
)

__all__ = [
    "__version__",
    "AlreadyPublishingError",
    "AlwaysGranted",
    "BrokerConnectError",
    "BrokerConnection",
    "BrokerPublishError",
    "ConnectionState",
    "DEFAULT_TOPIC",
    "FatalConnectionError",
    "HttpPollingSampleSource",
    "LocationSample",
    "MqttTransport",
    "OverflowPolicy",
    "PayloadFormatError",
    "PermissionDeniedError",
    "PlatformSampleSource",
    "PublishQueue",
    "PublishedLocation",
    "PublisherConfig",
    "PublisherConfigError",
    "PublisherController",
    "PublisherError",
    "PublisherState",
    "PublisherStatus",
    "QueueEmptyError",
    "QueueFullError",
    "SampleSource",
    "SessionIdentity",
    "UpdateInterval",
    "backoff_delay",
    "decode_payload",
    "encode_payload",
]
