"""LMS course catalogue and NPCU course properties -> ``lms_courses``."""

from __future__ import annotations

from typing import Any, Mapping

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from partner_sync.models import LmsCourse
from partner_sync.utils.timeutils import utcnow

from ..clients import LmsClient
from ..records import LmsCourseRecord
from .base import SyncStats, SyncStep, assign

MIN_NPCU = 0
MAX_NPCU = 2
ARCHIVED_STATUS = "archived"


def parse_npcu(value: Any) -> int:
    """NPCU values are 0, 1 or 2; anything unparseable or out of range is 0."""
    try:
        npcu = int(str(value).strip())
    except (TypeError, ValueError):
        return 0
    if npcu < MIN_NPCU or npcu > MAX_NPCU:
        return 0
    return npcu


class CourseSync(SyncStep):
    sync_type = "lms_courses"
    entity_type = "lms_course"

    def __init__(self, lms_client: LmsClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.lms = lms_client

    def health_monitors(self):
        return (self.lms.health,)

    def execute(self, stats: SyncStats, *, since, cache) -> None:
        fetch = self.lms.fetch_courses(since=since)
        stats.details["fetched"] = len(fetch.records)
        if fetch.partial:
            stats.details["fetch_error"] = str(fetch.error)
        if cache is not None and since is None and fetch.complete:
            cache.set_courses(fetch.records)

        existing = {course.id: course for course in self.session.execute(select(LmsCourse)).scalars()}
        total = len(fetch.records)
        for index, resource in enumerate(fetch.records, start=1):
            try:
                record = LmsCourseRecord.from_resource(resource)
            except (KeyError, TypeError, ValueError) as exc:
                stats.skipped += 1
                stats.add_error(repr(resource)[:80], f"Unparseable course: {exc}")
                continue
            stats.processed += 1
            course = existing.get(record.id)
            try:
                if course is None:
                    course = LmsCourse(
                        id=record.id,
                        name=record.name or f"Course {record.id}",
                        description=record.description,
                        status=record.status,
                        synced_at=utcnow(),
                    )
                    self.session.add(course)
                    self.session.commit()
                    existing[record.id] = course
                    stats.created += 1
                else:
                    changed = assign(course, "name", record.name or course.name)
                    changed |= assign(course, "description", record.description)
                    changed |= assign(course, "status", record.status)
                    course.synced_at = utcnow()
                    self.session.commit()
                    if changed:
                        stats.updated += 1
                    else:
                        stats.unchanged += 1
            except SQLAlchemyError as exc:
                self.record_row_failure(stats, entity_id=record.id, entity_name=record.name, error=exc)
            self.emit_progress(index, total, record.name)


class CoursePropertySync(SyncStep):
    """
    Apply NPCU values from the course-properties feed.

    A property row for a course missing from the catalogue (archived courses
    drop out of ``/v2/courses``) still matters for certification history, so a
    placeholder archived course is created when its NPCU value is positive.
    """

    sync_type = "lms_course_properties"
    entity_type = "lms_course"
    supports_incremental = False

    def __init__(self, lms_client: LmsClient, **kwargs) -> None:
        super().__init__(**kwargs)
        self.lms = lms_client

    def health_monitors(self):
        return (self.lms.health,)

    @staticmethod
    def _properties(resource: Mapping[str, Any]) -> Mapping[str, Any]:
        attributes = resource.get("attributes") or {}
        return attributes.get("properties") or attributes

    def execute(self, stats: SyncStats, *, since, cache) -> None:
        fetch = self.lms.fetch_course_properties()
        stats.details["fetched"] = len(fetch.records)
        existing = {course.id: course for course in self.session.execute(select(LmsCourse)).scalars()}

        for resource in fetch.records:
            course_id = resource.get("id")
            if not course_id:
                stats.skipped += 1
                continue
            course_id = str(course_id)
            properties = self._properties(resource)
            npcu = parse_npcu(properties.get("npcu"))
            stats.processed += 1
            course = existing.get(course_id)
            try:
                if course is None:
                    if npcu == 0:
                        stats.skipped += 1
                        continue
                    course = LmsCourse(
                        id=course_id,
                        name=properties.get("name") or f"Unknown Course ({course_id})",
                        status=ARCHIVED_STATUS,
                        npcu_value=npcu,
                        is_certification=True,
                        synced_at=utcnow(),
                    )
                    self.session.add(course)
                    self.session.commit()
                    existing[course_id] = course
                    stats.created += 1
                    stats.bump("archived_created")
                    continue
                changed = assign(course, "npcu_value", npcu)
                changed |= assign(course, "is_certification", npcu > 0)
                self.session.commit()
            except SQLAlchemyError as exc:
                self.record_row_failure(stats, entity_id=course_id, entity_name=None, error=exc)
                continue
            if changed:
                stats.updated += 1
            else:
                stats.unchanged += 1
        stats.details["certification_courses"] = sum(1 for course in existing.values() if course.npcu_value > 0)
