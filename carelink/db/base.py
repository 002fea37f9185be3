"""Declarative base for the carelink tables."""

from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Shared metadata for users, care links, SOS alerts and notifications.

    Alembic autogenerate and the test fixtures both read Base.metadata.
    """
