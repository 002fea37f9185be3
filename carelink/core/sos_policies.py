"""SOS alert states and policy constants."""

from __future__ import annotations

import enum


class AlertStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    RESOLVED = "RESOLVED"


class LocationStatus(str, enum.Enum):
    pending = "pending"
    available = "available"
    not_available = "not_available"


class TriggerRole(str, enum.Enum):
    """Who pressed the SOS button, relative to the person in danger."""

    subject = "subject"
    caregiver = "caregiver"


class UserRole(str, enum.Enum):
    elderly = "elderly"
    caregiver = "caregiver"
    staff = "staff"


# Transitions that explicitly cancel location tracking. APPROVED is not here;
# the coordinator still stops on its next fix because the alert is no longer PENDING.
STOP_TRACKING_STATUSES = frozenset({AlertStatus.ACCEPTED, AlertStatus.REJECTED, AlertStatus.RESOLVED})

# Statuses that close the case for good
CLOSED_STATUSES = frozenset({AlertStatus.REJECTED, AlertStatus.RESOLVED})

# What a caregiver sees for their linked people (rejected alerts are hidden)
CAREGIVER_VISIBLE_STATUSES = (
    AlertStatus.PENDING,
    AlertStatus.ACCEPTED,
    AlertStatus.APPROVED,
    AlertStatus.RESOLVED,
)

NOTIFICATION_TITLE = "Emergency SOS Alert"
NOTIFICATION_TYPE = "sos"
NOTIFICATION_PRIORITY = "critical"
