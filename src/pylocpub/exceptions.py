"""Custom exception hierarchy for pylocpub."""

from __future__ import annotations


class PublisherError(Exception):
    """Base exception for all pylocpub errors."""


class PublisherConfigError(PublisherError):
    """Invalid or missing configuration."""


class PermissionDeniedError(PublisherError):
    """Location permission is absent and was not granted on request."""


class AlreadyPublishingError(PublisherError):
    """``start()`` was called while a publishing session is active."""


class QueueFullError(PublisherError):
    """The publish queue stayed full for the whole enqueue timeout."""


class QueueEmptyError(PublisherError):
    """A non-blocking dequeue found no sample."""


class BrokerConnectError(PublisherError):
    """Broker unreachable, identifier refused, or connect timed out."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class BrokerPublishError(PublisherError):
    """A single publish was not acknowledged by the broker."""

    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class FatalConnectionError(PublisherError):
    """Reconnect attempts exhausted.

    Raised out of the drain loop and handed to ``on_fatal`` callbacks.
    ``attempts`` is the number of consecutive failures observed and
    ``last_error`` the failure that tipped it over.
    """

    def __init__(
        self,
        message: str,
        *,
        attempts: int = 0,
        last_error: BaseException | None = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(message)


class PayloadFormatError(PublisherError, ValueError):
    """A wire payload does not follow the pipe-delimited location format."""
