import pytest

from partner_sync.models import LmsCourse, SyncMode, db
from partner_sync.sync.pipeline import CoursePropertySync, CourseSync
from partner_sync.sync.pipeline.courses import parse_npcu
from partner_sync.sync.session_cache import SyncSessionCache

LMS_BASE = "https://lms.test"


def course(course_id, name, status="live"):
    return {"id": course_id, "type": "courses", "attributes": {"name": name, "status": status}}


def course_property(course_id, npcu, nested=True):
    values = {"npcu": npcu}
    attributes = {"properties": values} if nested else values
    return {"id": course_id, "type": "course_properties", "attributes": attributes}


def options(orchestrator):
    return {"audit": orchestrator.audit, "settings": orchestrator.settings, "session": db.session}


@pytest.mark.parametrize(
    "raw, expected",
    [(0, 0), (1, 1), ("2", 2), (" 1 ", 1), (3, 0), (-1, 0), ("abc", 0), (None, 0), ("", 0)],
)
def test_parse_npcu(raw, expected):
    assert parse_npcu(raw) == expected


def test_course_sync_upserts_catalogue(orchestrator, lms_client, fake_session):
    fake_session.lms_collection("/v2/courses", [course("c1", "Platform Basics"), course("c2", "Advanced Automation")])
    cache = SyncSessionCache("s1")
    step = CourseSync(lms_client, **options(orchestrator))

    stats = step.run(SyncMode.FULL, cache=cache)

    assert stats.created == 2
    assert db.session.get(LmsCourse, "c1").name == "Platform Basics"
    assert len(cache.get_courses()) == 2

    again = step.run(SyncMode.FULL)
    assert again.unchanged == 2


def test_course_properties_apply_npcu(orchestrator, lms_client, fake_session):
    db.session.add_all([LmsCourse(id="c1", name="Platform Basics"), LmsCourse(id="c2", name="Intro", npcu_value=1)])
    db.session.commit()
    fake_session.lms_collection(
        "/v2/properties/courses",
        [course_property("c1", "2"), course_property("c2", 7, nested=False)],
    )
    step = CoursePropertySync(lms_client, **options(orchestrator))

    stats = step.run(SyncMode.INCREMENTAL)

    assert stats.mode is SyncMode.FULL
    assert stats.updated == 2
    c1 = db.session.get(LmsCourse, "c1")
    assert (c1.npcu_value, c1.is_certification) == (2, True)
    c2 = db.session.get(LmsCourse, "c2")
    assert (c2.npcu_value, c2.is_certification) == (0, False)
    assert stats.details["certification_courses"] == 1


def test_properties_for_unknown_courses_create_archived_placeholders(orchestrator, lms_client, fake_session):
    fake_session.lms_collection(
        "/v2/properties/courses",
        [course_property("c-archived", 1), course_property("c-zero", 0), {"attributes": {}}],
    )
    step = CoursePropertySync(lms_client, **options(orchestrator))

    stats = step.run(SyncMode.FULL)

    placeholder = db.session.get(LmsCourse, "c-archived")
    assert placeholder.name == "Unknown Course (c-archived)"
    assert placeholder.status == "archived"
    assert placeholder.is_certification
    assert db.session.get(LmsCourse, "c-zero") is None
    assert stats.created == 1
    assert stats.skipped == 2
    assert stats.details["archived_created"] == 1
