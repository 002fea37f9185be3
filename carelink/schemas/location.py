"""Device location report schemas."""

from pydantic import BaseModel, Field

from carelink.services.location.provider import LocationPermission


class LocationUpdate(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0, description="Horizontal accuracy in meters")


class PermissionUpdate(BaseModel):
    permission: LocationPermission
