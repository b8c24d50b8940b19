# partner_sync/models/enums.py
"""
Closed enumerations shared by the sync models.

PRM and LMS payloads carry these values as free text; ``parse`` helpers turn
them into members and raise ``ValueError`` for anything unknown so callers can
classify the record instead of silently defaulting.
"""

from enum import Enum as PyEnum


class PartnerTier(str, PyEnum):
    """Partner program tier as published by the PRM."""

    REGISTERED = "Registered"
    CERTIFIED = "Certified"
    SELECT = "Select"
    PREMIER = "Premier"
    PREMIER_PLUS = "Premier Plus"
    AGGREGATOR = "Aggregator"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        text = " ".join(str(value or "").split()).lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        raise ValueError(f"Unknown partner tier: {value!r}")

    @property
    def npcu_requirement(self) -> int:
        return TIER_NPCU_REQUIREMENTS[self]


# Minimum certified NPCU a partner must hold to keep its tier.
TIER_NPCU_REQUIREMENTS = {
    PartnerTier.REGISTERED: 5,
    PartnerTier.CERTIFIED: 10,
    PartnerTier.SELECT: 15,
    PartnerTier.PREMIER: 20,
    PartnerTier.PREMIER_PLUS: 20,
    PartnerTier.AGGREGATOR: 5,
}


class LmsUserStatus(str, PyEnum):
    """Lifecycle of a mirrored LMS learner"""

    ACTIVE = "active"
    DEACTIVATED = "deactivated"
    DELETED = "deleted"


class EnrollmentStatus(str, PyEnum):
    """Course progress derived from the LMS transcript progress status."""

    ENROLLED = "enrolled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    @classmethod
    def from_progress(cls, value):
        if value is None or str(value).strip() == "":
            return cls.ENROLLED
        text = str(value).strip().lower()
        for member in cls:
            if member.value == text:
                return member
        raise ValueError(f"Unknown progress status: {value!r}")

    @property
    def percent(self) -> int:
        return {
            EnrollmentStatus.COMPLETED: 100,
            EnrollmentStatus.IN_PROGRESS: 50,
            EnrollmentStatus.ENROLLED: 0,
        }[self]


class SyncMode(str, PyEnum):
    FULL = "full"
    INCREMENTAL = "incremental"

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        if not text:
            return cls.INCREMENTAL
        try:
            return cls(text)
        except ValueError:
            raise ValueError(f"Unknown sync mode: {value!r}") from None


class SyncRunStatus(str, PyEnum):
    """Lifecycle states for a sync run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class DeletionReason(str, PyEnum):
    """Tags written to ``deletion_reason`` when a row is soft-deleted."""

    FILTERED = "filtered"
    REMOVED = "removed"
    NOT_FOUND_IN_LMS = "not found in LMS"
    PARTNER_OFFBOARDED = "partner offboarded"
