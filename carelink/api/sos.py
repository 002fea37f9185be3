"""SOS alerts API."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from carelink.core.deps import get_current_user, get_optional_user, get_sos_service, require_staff
from carelink.core.sos_policies import CAREGIVER_VISIBLE_STATUSES, AlertStatus
from carelink.models.user import User
from carelink.schemas.sos import SosAlertRead, SosCreate, SosCreated, SosStatusUpdate
from carelink.services.sos_service import AlertNotFound, NotAuthenticated, SosService

router = APIRouter(prefix="/sos", tags=["sos"])


@router.post("", response_model=SosCreated, status_code=status.HTTP_201_CREATED)
async def trigger_sos(
    data: SosCreate,
    service: SosService = Depends(get_sos_service),
    current_user: User | None = Depends(get_optional_user),
):
    """Raise an SOS. Returns as soon as the alert is stored; location and caregiver
    notifications follow in the background."""
    try:
        alert_id = await service.create_alert(
            reporter_id=current_user.id if current_user else None,
            triggered_by=data.triggered_by,
            subject_id=data.subject_id,
        )
    except NotAuthenticated as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(e),
            headers={"WWW-Authenticate": "Bearer"},
        )
    return SosCreated(id=alert_id)


@router.get("/pending", response_model=list[SosAlertRead])
async def list_pending(
    service: SosService = Depends(get_sos_service),
    current_user: User = Depends(require_staff),
):
    """All alerts still waiting for a responder."""
    return await service.store.list_alerts(status_in=[AlertStatus.PENDING])


@router.get("/caregiver", response_model=list[SosAlertRead])
async def list_for_caregiver(
    subject_ids: list[int] = Query(default=[]),
    service: SosService = Depends(get_sos_service),
    current_user: User = Depends(get_current_user),
):
    """Alerts for the people a caregiver looks after. No ids, no alerts."""
    return await service.store.list_alerts(status_in=CAREGIVER_VISIBLE_STATUSES, subject_in=subject_ids)


@router.get("/mine", response_model=list[SosAlertRead])
async def list_mine(
    service: SosService = Depends(get_sos_service),
    current_user: User = Depends(get_current_user),
):
    """Alerts about the current user, newest first."""
    return await service.store.list_alerts(subject_id=current_user.id)


@router.get("/{sos_id}", response_model=SosAlertRead)
async def get_alert(
    sos_id: str,
    service: SosService = Depends(get_sos_service),
    current_user: User = Depends(get_current_user),
):
    alert = await service.store.get_alert(sos_id)
    if not alert:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="SOS not found")
    return alert


@router.post("/{sos_id}/status", response_model=SosAlertRead)
async def update_status(
    sos_id: str,
    data: SosStatusUpdate,
    service: SosService = Depends(get_sos_service),
    current_user: User = Depends(get_current_user),
):
    """Responder action (accept, approve, reject, resolve). Last write wins."""
    try:
        return await service.transition_status(sos_id, data.status, current_user.id)
    except AlertNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
