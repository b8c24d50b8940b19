"""
Sync chains.

``SyncOrchestrator`` wires clients, audit log, offboarding and the session
cache into the ordered PRM and LMS step chains. Steps run one after the other
and a step failure stops the chain: the failed step has already closed its
run row, and the exception propagates to the caller.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import Flask, current_app
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config.filter_rules import DEFAULT_RULES, FilterRules, load_filter_rules
from partner_sync.models import (
    Contact,
    LmsCourse,
    LmsEnrollment,
    LmsGroup,
    LmsUser,
    Partner,
    SyncMode,
    db,
)
from partner_sync.utils.sync import get_sync_state
from partner_sync.utils.timeutils import isoformat

from ..audit import SyncAuditLog
from ..clients import LmsClient, PrmClient, create_lms_client, create_prm_client
from ..offboarding import OffboardingService
from ..progress import ProgressChannel
from ..session_cache import SyncSessionManager
from .base import SyncSettings, SyncStep
from .contacts import ContactSync
from .courses import CoursePropertySync, CourseSync
from .enrollments import EnrollmentSync
from .group_members import GroupMembershipSync
from .lms_groups import LmsGroupSync
from .lms_users import LmsUserSync, link_contacts_to_lms_users
from .partners import PartnerSync
from .preview import build_preview

PRM_SYNC_TYPES = (PartnerSync.sync_type, ContactSync.sync_type)
LMS_SYNC_TYPES = (
    LmsUserSync.sync_type,
    LmsGroupSync.sync_type,
    GroupMembershipSync.sync_type,
    CourseSync.sync_type,
    CoursePropertySync.sync_type,
    EnrollmentSync.sync_type,
)
ALL_SYNC_TYPES = PRM_SYNC_TYPES + LMS_SYNC_TYPES


def get_session_manager(app: Flask) -> SyncSessionManager:
    state = get_sync_state(app)
    manager = state.get("session_manager")
    if manager is None:
        ttl = timedelta(minutes=int(app.config.get("SYNC_CACHE_TTL_MINUTES", 60)))
        manager = SyncSessionManager(ttl=ttl, logger=app.logger)
        state["session_manager"] = manager
    return manager


class SyncOrchestrator:
    def __init__(
        self,
        *,
        prm_client: PrmClient,
        lms_client: LmsClient,
        rules: FilterRules = DEFAULT_RULES,
        settings: SyncSettings | None = None,
        session_manager: SyncSessionManager | None = None,
        progress: ProgressChannel | None = None,
        session: Session | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.prm = prm_client
        self.lms = lms_client
        self.rules = rules
        self.settings = settings or SyncSettings()
        self.session = session or db.session
        self.logger = logger or logging.getLogger(__name__)
        self.session_manager = session_manager or SyncSessionManager(
            ttl=timedelta(minutes=self.settings.cache_ttl_minutes), logger=self.logger
        )
        self.progress = progress or ProgressChannel(self.logger)
        self.audit = SyncAuditLog(self.session, self.logger)
        self.offboarding = OffboardingService(
            self.lms,
            rules=self.rules,
            session=self.session,
            batch_size=self.settings.offboard_batch_size,
            logger=self.logger,
        )

    @classmethod
    def from_app(cls, app: Flask | None = None, **overrides) -> "SyncOrchestrator":
        app = app or current_app._get_current_object()  # type: ignore[attr-defined]
        options = {
            "prm_client": create_prm_client(app),
            "lms_client": create_lms_client(app),
            "rules": load_filter_rules(app.config),
            "settings": SyncSettings.from_config(app.config),
            "session_manager": get_session_manager(app),
            "logger": app.logger,
        }
        options.update(overrides)
        return cls(**options)

    def _step_options(self) -> dict:
        return {
            "audit": self.audit,
            "progress": self.progress,
            "settings": self.settings,
            "rules": self.rules,
            "session": self.session,
            "logger": self.logger,
        }

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def prm_steps(self) -> list[SyncStep]:
        options = self._step_options()
        return [
            PartnerSync(self.prm, offboarding=self.offboarding, **options),
            ContactSync(self.prm, offboarding=self.offboarding, **options),
        ]

    def lms_steps(self) -> list[SyncStep]:
        options = self._step_options()
        return [
            LmsUserSync(self.lms, **options),
            LmsGroupSync(self.lms, **options),
            GroupMembershipSync(self.lms, **options),
            CourseSync(self.lms, **options),
            CoursePropertySync(self.lms, **options),
            EnrollmentSync(self.lms, **options),
        ]

    def run_prm_sync(self, mode: SyncMode | str = SyncMode.INCREMENTAL) -> dict:
        requested = SyncMode.parse(mode)
        results = {"requested_mode": requested.value, "steps": {}}
        for step in self.prm_steps():
            results["steps"][step.sync_type] = step.run(requested).to_dict()
        return results

    def run_lms_sync(self, mode: SyncMode | str = SyncMode.INCREMENTAL) -> dict:
        requested = SyncMode.parse(mode)
        self.lms.health.ensure_healthy("LMS sync")
        cache = self.session_manager.init()
        results: dict = {"requested_mode": requested.value, "steps": {}}
        try:
            for step in self.lms_steps():
                results["steps"][step.sync_type] = step.run(requested, cache=cache).to_dict()
            results["contacts_linked"] = link_contacts_to_lms_users(self.session)
        finally:
            cache_stats = self.session_manager.end(cache)
            self.logger.info("LMS sync cache efficiency", extra={"sync_cache_stats": cache_stats})
        results["cache"] = cache_stats
        return results

    def run_all(self, mode: SyncMode | str = SyncMode.INCREMENTAL) -> dict:
        return {"prm": self.run_prm_sync(mode), "lms": self.run_lms_sync(mode)}

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def _count(self, model, *criteria) -> int:
        stmt = select(func.count()).select_from(model)
        if criteria:
            stmt = stmt.where(*criteria)
        return int(self.session.execute(stmt).scalar() or 0)

    def status(self) -> dict:
        latest = self.audit.latest_runs(list(ALL_SYNC_TYPES))
        return {
            "runs": {sync_type: run.to_dict() for sync_type, run in latest.items()},
            "last_successful": {
                sync_type: isoformat(self.audit.last_successful_sync(sync_type)) for sync_type in ALL_SYNC_TYPES
            },
            "health": {"prm": self.prm.health.to_dict(), "lms": self.lms.health.to_dict()},
            "counts": {
                "partners": self._count(Partner, Partner.is_active.is_(True)),
                "contacts": self._count(Contact, Contact.is_active.is_(True)),
                "lms_users": self._count(LmsUser),
                "lms_groups": self._count(LmsGroup, LmsGroup.is_active.is_(True)),
                "lms_courses": self._count(LmsCourse),
                "lms_enrollments": self._count(LmsEnrollment),
            },
        }

    def preview(self, sample_size: int = 10) -> dict:
        return build_preview(self.prm, self.rules, sample_size=sample_size)
