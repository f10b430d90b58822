"""Location sample model."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from pylocpub._normalize import safe_float, safe_int

# Attribute names probed on non-mapping fix objects, in priority order.
_FIX_ATTRIBUTES: dict[str, tuple[str, ...]] = {
    "timestamp": ("timestamp", "time"),
    "latitude": ("latitude", "lat"),
    "longitude": ("longitude", "lon", "lng"),
    "speed_mps": ("speed_mps", "speed"),
}


class LocationSample(BaseModel):
    """One timestamped position and speed reading.

    Parameters
    ----------
    timestamp : int
        Fix time in milliseconds since the Unix epoch.
    latitude : float
        Latitude in degrees, ``[-90, 90]``.
    longitude : float
        Longitude in degrees, ``[-180, 180]``.
    speed_mps : float
        Ground speed in metres per second.  Missing speed is read as ``0``,
        which is what platform location APIs report without a speed fix.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        populate_by_name=True,
        allow_inf_nan=False,
    )

    timestamp: int = Field(ge=0, validation_alias=AliasChoices("timestamp", "time", "timestampMs", "ts"))
    latitude: float = Field(ge=-90.0, le=90.0, validation_alias=AliasChoices("latitude", "lat"))
    longitude: float = Field(ge=-180.0, le=180.0, validation_alias=AliasChoices("longitude", "lon", "lng"))
    speed_mps: float = Field(
        default=0.0,
        ge=0.0,
        validation_alias=AliasChoices("speed_mps", "speed", "speedMetersPerSecond"),
    )

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        parsed = safe_int(value)
        return value if parsed is None else parsed

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def _coerce_coordinate(cls, value: Any) -> Any:
        parsed = safe_float(value)
        return value if parsed is None else parsed

    @field_validator("speed_mps", mode="before")
    @classmethod
    def _coerce_speed(cls, value: Any) -> float:
        parsed = safe_float(value)
        return 0.0 if parsed is None else parsed

    @property
    def speed_kmh(self) -> float:
        return self.speed_mps * 3.6

    @classmethod
    def from_fix(cls, fix: Any) -> LocationSample:
        """Build a sample from a raw platform fix.

        *fix* is either a mapping (JSON object) or an object exposing
        ``time``/``latitude``/``longitude``/``speed`` attributes, the
        shape of an Android ``Location``.

        Raises
        ------
        pydantic.ValidationError
            If a required field is missing or out of range.
        """
        if isinstance(fix, LocationSample):
            return fix
        if isinstance(fix, Mapping):
            return cls.model_validate(dict(fix))

        values: dict[str, Any] = {}
        for field_name, candidates in _FIX_ATTRIBUTES.items():
            for attr in candidates:
                value = getattr(fix, attr, None)
                if callable(value):
                    value = value()
                if value is not None:
                    values[field_name] = value
                    break
        return cls.model_validate(values)
