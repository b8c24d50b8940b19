# partner_sync/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, SoftDeleteMixin, db
from .contact import Contact
from .enums import (
    TIER_NPCU_REQUIREMENTS,
    DeletionReason,
    EnrollmentStatus,
    LmsUserStatus,
    PartnerTier,
    SyncMode,
    SyncRunStatus,
)
from .lms import LmsCourse, LmsEnrollment, LmsGroup, LmsGroupMember, LmsUser
from .partner import Partner
from .sync import SyncFailure, SyncRun

__all__ = [
    "db",
    "BaseModel",
    "SoftDeleteMixin",
    "Contact",
    "DeletionReason",
    "EnrollmentStatus",
    "LmsCourse",
    "LmsEnrollment",
    "LmsGroup",
    "LmsGroupMember",
    "LmsUser",
    "LmsUserStatus",
    "Partner",
    "PartnerTier",
    "SyncFailure",
    "SyncMode",
    "SyncRun",
    "SyncRunStatus",
    "TIER_NPCU_REQUIREMENTS",
]
