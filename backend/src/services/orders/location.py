"""Driver location snapshot carried with status transition requests."""

from typing import Any, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.services.orders.exceptions import LocationRequiredError


class LocationSnapshot(BaseModel):
    """Coordinates reported by the driver's device with a single request.

    Only the shape is checked. Geographic plausibility is the device's
    concern, so any finite pair of numbers is accepted.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    lat: float = Field(..., allow_inf_nan=False, description="Latitude")
    lng: float = Field(..., allow_inf_nan=False, description="Longitude")

    def to_json(self) -> dict[str, float]:
        """Value stored verbatim in ``orders.driver_location``."""
        return {"lat": self.lat, "lng": self.lng}


LocationInput = Union[LocationSnapshot, Mapping[str, Any], None]


def coerce_location(value: LocationInput) -> Optional[LocationSnapshot]:
    """Normalise a request-supplied location.

    Returns ``None`` when no location was supplied.

    Raises:
        LocationRequiredError: If a value was supplied but is not a
            ``{lat, lng}`` pair
    """
    if value is None or isinstance(value, LocationSnapshot):
        return value

    try:
        return LocationSnapshot.model_validate(value)
    except ValidationError as e:
        raise LocationRequiredError(
            "Driver location must be a {lat, lng} pair",
            errors=[error["msg"] for error in e.errors()],
        ) from e


def require_location(value: LocationInput, **context: Any) -> LocationSnapshot:
    """Like ``coerce_location`` but a missing value is an error too."""
    location = coerce_location(value)
    if location is None:
        raise LocationRequiredError(
            "A current driver location is required for this transition",
            **context,
        )
    return location
