"""WebSocket endpoints with JWT auth.

/ws is the device channel: the server pushes location.permission_requested,
location.fix_requested and location.stream_requested to the user's phone.
/ws/sos/* are live alert views; each message is the full current list.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from sqlalchemy.orm import Session

from carelink.core.deps import get_sos_service, user_from_token
from carelink.core.sos_policies import CAREGIVER_VISIBLE_STATUSES, AlertStatus, UserRole
from carelink.core.ws_manager import ws_manager
from carelink.db.session import get_db
from carelink.models.user import User
from carelink.schemas.sos import SosAlertRead
from carelink.services.sos_service import SosService

logger = logging.getLogger(__name__)

router = APIRouter()


async def _authenticate_ws(websocket: WebSocket, db: Session) -> User | None:
    """Validate ?token=<jwt>; closes the socket and returns None on failure."""
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4001, reason="Missing token")
        return None
    user = user_from_token(db, token)
    if user is None:
        await websocket.close(code=4003, reason="Invalid or expired token")
        return None
    return user


async def _keepalive(websocket: WebSocket) -> None:
    # Client can send pings; returns when the client goes away
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text('{"event":"pong"}')
    except WebSocketDisconnect:
        pass


async def _serve_snapshots(websocket: WebSocket, snapshots: AsyncIterator[list[SosAlertRead]]) -> None:
    """Push every snapshot until either side ends the stream."""

    async def pump() -> None:
        async for alerts in snapshots:
            await websocket.send_json({"event": "sos.snapshot", "data": [a.model_dump(mode="json") for a in alerts]})

    pump_task = asyncio.create_task(pump())
    listen_task = asyncio.create_task(_keepalive(websocket))
    try:
        done, _ = await asyncio.wait({pump_task, listen_task}, return_when=asyncio.FIRST_COMPLETED)
        if pump_task in done:
            if pump_task.exception() is not None:
                logger.warning("SOS live view failed: %s", pump_task.exception())
            await websocket.close()
    finally:
        pump_task.cancel()
        listen_task.cancel()
        await asyncio.gather(pump_task, listen_task, return_exceptions=True)


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, db: Session = Depends(get_db)):
    """Device/event channel. Client connects with ?token=<jwt>."""
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    user_id = user.id
    await ws_manager.connect(websocket, user_id)
    try:
        await _keepalive(websocket)
    finally:
        ws_manager.disconnect(websocket, user_id)


@router.websocket("/ws/sos/pending")
async def pending_alerts_stream(
    websocket: WebSocket,
    db: Session = Depends(get_db),
    service: SosService = Depends(get_sos_service),
):
    """Staff view: every PENDING alert."""
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    if user.role != UserRole.staff.value:
        await websocket.close(code=4003, reason="Staff only")
        return
    await websocket.accept()
    await _serve_snapshots(websocket, service.store.watch_alerts(status_in=[AlertStatus.PENDING]))


@router.websocket("/ws/sos/caregiver")
async def caregiver_alerts_stream(
    websocket: WebSocket,
    subject_ids: list[int] = Query(default=[]),
    db: Session = Depends(get_db),
    service: SosService = Depends(get_sos_service),
):
    """Caregiver view: alerts for the given linked people. Closes at once for an empty list."""
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    await websocket.accept()
    await _serve_snapshots(
        websocket,
        service.store.watch_alerts(status_in=CAREGIVER_VISIBLE_STATUSES, subject_in=subject_ids),
    )


@router.websocket("/ws/sos/mine")
async def my_alerts_stream(
    websocket: WebSocket,
    db: Session = Depends(get_db),
    service: SosService = Depends(get_sos_service),
):
    """Status box for the person the alerts are about."""
    user = await _authenticate_ws(websocket, db)
    if user is None:
        return
    await websocket.accept()
    await _serve_snapshots(websocket, service.store.watch_alerts(subject_id=user.id))
