"""FastAPI dependencies."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.orm import Session

from carelink.core.security import decode_access_token
from carelink.core.sos_policies import UserRole
from carelink.db.session import SessionLocal, get_db
from carelink.models.user import User
from carelink.services.alert_store import AlertStore
from carelink.services.location.device_feed import DeviceFeedRegistry, device_feeds
from carelink.services.location_coordinator import LocationCoordinator
from carelink.services.notification_service import NotificationService
from carelink.services.sos_service import SosService

security = HTTPBearer(auto_error=False)

_sos_service: SosService | None = None


def get_user_by_email(db: Session, email: str) -> User | None:
    """Get user by email."""
    return db.execute(select(User).where(User.email == email)).scalar_one_or_none()


def user_from_token(db: Session, token: str | None) -> User | None:
    """Resolve a bearer token to an active user, or None."""
    if not token:
        return None
    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        return None
    # sub is email for our tokens
    user = get_user_by_email(db, payload["sub"])
    if not user or not user.is_active:
        return None
    return user


def get_optional_user(
    db: Annotated[Session, Depends(get_db)],
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
) -> User | None:
    """Caller identity if one was presented and is valid."""
    return user_from_token(db, credentials.credentials if credentials else None)


def get_current_user(current_user: Annotated[User | None, Depends(get_optional_user)]) -> User:
    """Require authenticated user. Raises 401 if not authenticated."""
    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return current_user


def require_staff(current_user: Annotated[User, Depends(get_current_user)]) -> User:
    """Require current user to be response staff."""
    if current_user.role != UserRole.staff.value:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only staff can view all pending SOS alerts",
        )
    return current_user


def build_sos_service(store: AlertStore, feeds: DeviceFeedRegistry = device_feeds) -> SosService:
    return SosService(
        store=store,
        coordinator=LocationCoordinator(store, feeds.for_user),
        notifications=NotificationService(store),
    )


def get_sos_service() -> SosService:
    """Return the process-wide SOS service."""
    global _sos_service
    if _sos_service is None:
        _sos_service = build_sos_service(AlertStore(SessionLocal))
    return _sos_service


def get_device_feeds() -> DeviceFeedRegistry:
    return device_feeds
