"""Wire format for published location samples.

One line of UTF-8 text, pipe-delimited, fields in fixed order::

    studentId|speedKmH|timestampMs|latitude|longitude

Speed is rendered with 2 decimals, coordinates with 6, the timestamp as
an integer.  Consumers parse this contract, so the rendering must stay
bit-exact.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict

from pylocpub.exceptions import PayloadFormatError
from pylocpub.models.sample import LocationSample

SEPARATOR = "|"
SPEED_DECIMALS = 2
COORDINATE_DECIMALS = 6
_FIELD_COUNT = 5


class PublishedLocation(BaseModel):
    """Decoded form of a location payload, as seen by a consumer."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    student_id: str
    speed_kmh: float
    timestamp_ms: int
    latitude: float
    longitude: float


def _fixed(value: float, decimals: int) -> str:
    text = f"{value:.{decimals}f}"
    # Tiny negatives round to "-0.00"; consumers expect an unsigned zero.
    if text.startswith("-") and float(text) == 0.0:
        return text[1:]
    return text


def encode_payload(student_id: str, sample: LocationSample) -> str:
    """Render *sample* as a payload line attributed to *student_id*."""
    if SEPARATOR in student_id or "\n" in student_id or "\r" in student_id:
        raise PayloadFormatError("student id must not contain '|' or line breaks")
    return SEPARATOR.join(
        (
            student_id,
            _fixed(sample.speed_kmh, SPEED_DECIMALS),
            str(sample.timestamp),
            _fixed(sample.latitude, COORDINATE_DECIMALS),
            _fixed(sample.longitude, COORDINATE_DECIMALS),
        )
    )


def decode_payload(payload: str | bytes) -> PublishedLocation:
    """Parse a payload line back into its fields.

    Raises
    ------
    PayloadFormatError
        If the text is not valid UTF-8, has the wrong number of fields,
        or a numeric field does not parse.
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise PayloadFormatError("payload is not valid UTF-8") from exc

    parts = payload.rstrip("\r\n").split(SEPARATOR)
    if len(parts) != _FIELD_COUNT:
        raise PayloadFormatError(f"expected {_FIELD_COUNT} fields, got {len(parts)}")

    student_id, speed, timestamp, latitude, longitude = parts
    try:
        return PublishedLocation(
            student_id=student_id,
            speed_kmh=float(speed),
            timestamp_ms=int(timestamp),
            latitude=float(latitude),
            longitude=float(longitude),
        )
    except ValueError as exc:
        raise PayloadFormatError(f"malformed payload field: {exc}") from exc
