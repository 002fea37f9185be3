"""Device location reports."""

from fastapi import APIRouter, Depends

from carelink.core.deps import get_current_user, get_device_feeds
from carelink.models.user import User
from carelink.schemas.location import LocationUpdate, PermissionUpdate
from carelink.services.location.device_feed import DeviceFeedRegistry
from carelink.services.location.provider import Position

router = APIRouter(prefix="/location", tags=["location"])


@router.post("")
async def report_location(
    data: LocationUpdate,
    feeds: DeviceFeedRegistry = Depends(get_device_feeds),
    current_user: User = Depends(get_current_user),
):
    """Device reports a fix for its user. Runs on the event loop, where the feed queues live."""
    readers = feeds.for_user(current_user.id).report_position(
        Position(latitude=data.latitude, longitude=data.longitude, accuracy=data.accuracy)
    )
    return {"status": "ok", "latitude": data.latitude, "longitude": data.longitude, "readers": readers}


@router.post("/permission")
async def report_permission(
    data: PermissionUpdate,
    feeds: DeviceFeedRegistry = Depends(get_device_feeds),
    current_user: User = Depends(get_current_user),
):
    """Device reports its location permission state."""
    feeds.for_user(current_user.id).report_permission(data.permission)
    return {"status": "ok", "permission": data.permission.value}
