"""SOS alert schemas."""

from datetime import datetime

from pydantic import BaseModel, Field

from carelink.core.sos_policies import AlertStatus, LocationStatus, TriggerRole


class SosCreate(BaseModel):
    subject_id: int | None = Field(default=None, description="Person in danger; defaults to the caller")
    triggered_by: TriggerRole = TriggerRole.subject


class SosCreated(BaseModel):
    id: str


class SosStatusUpdate(BaseModel):
    status: AlertStatus


class SosAlertRead(BaseModel):
    id: str
    subject_id: int
    reporter_id: int
    triggered_by: TriggerRole
    status: AlertStatus
    location_status: LocationStatus
    latitude: float | None
    longitude: float | None
    map_url: str | None
    responded_by: int | None
    response_timestamp: datetime | None
    created_at: datetime

    model_config = {"from_attributes": True}

    @property
    def position(self) -> tuple[float, float] | None:
        if self.latitude is None or self.longitude is None:
            return None
        return (self.latitude, self.longitude)


class NotificationRead(BaseModel):
    id: int
    user_id: int
    sos_id: str
    target_user_id: int
    title: str
    message: str
    type: str
    priority: str
    is_read: bool
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}
