"""Liveness probe for load balancers and uptime checks."""

from fastapi import APIRouter

from carelink.core.config import settings

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    return {"status": "ok", "service": settings.app_name}
