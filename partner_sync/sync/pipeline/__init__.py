"""Sync steps and the chains that run them."""

from .base import SyncSettings, SyncStats, SyncStep
from .contacts import ContactSync
from .courses import CoursePropertySync, CourseSync
from .enrollments import EnrollmentSync
from .group_members import GroupMembershipSync
from .lms_groups import LmsGroupSync
from .lms_users import LmsUserSync, link_contacts_to_lms_users
from .orchestrator import ALL_SYNC_TYPES, SyncOrchestrator, get_session_manager
from .partners import PartnerSync
from .preview import build_preview

__all__ = [
    "ALL_SYNC_TYPES",
    "ContactSync",
    "CoursePropertySync",
    "CourseSync",
    "EnrollmentSync",
    "GroupMembershipSync",
    "LmsGroupSync",
    "LmsUserSync",
    "PartnerSync",
    "SyncOrchestrator",
    "SyncSettings",
    "SyncStats",
    "SyncStep",
    "build_preview",
    "get_session_manager",
    "link_contacts_to_lms_users",
]
