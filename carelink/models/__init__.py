"""SQLAlchemy models."""

from __future__ import annotations

from carelink.models.notification import Notification
from carelink.models.sos_alert import SosAlert
from carelink.models.user import CareLink, User

__all__ = [
    "User",
    "CareLink",
    "Notification",
    "SosAlert",
]
