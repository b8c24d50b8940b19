from datetime import datetime, timedelta, timezone

import pytest

from partner_sync.models import (
    Contact,
    EnrollmentStatus,
    LmsEnrollment,
    LmsGroup,
    LmsGroupMember,
    LmsUser,
    LmsUserStatus,
    Partner,
    PartnerTier,
    SyncFailure,
    SyncMode,
    SyncRun,
    SyncRunStatus,
    db,
)
from partner_sync.sync.errors import SyncAbortedError
from partner_sync.sync.pipeline import EnrollmentSync
from partner_sync.sync.pipeline.enrollments import SelectionReason, selection_reason
from partner_sync.utils.timeutils import as_utc

LMS_BASE = "https://lms.test"
NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
STALE_AFTER = timedelta(days=7)


def transcript(entry_id, course_id, progress="completed", resource_type="course", **attributes):
    attributes.update(resource_id=course_id, resource_type=resource_type, progress_status=progress)
    return {"id": entry_id, "type": "transcript_items", "attributes": attributes}


def transcripts_url(user_id):
    return f"{LMS_BASE}/v2/transcripts/{user_id}"


@pytest.fixture
def partner():
    row = Partner(name="Northwind Traders", tier=PartnerTier.PREMIER, prm_id="100")
    db.session.add(row)
    db.session.commit()
    return row


def add_linked_user(partner, user_id, **fields):
    db.session.add(LmsUser(id=user_id, email=f"{user_id}@northwind-partners.com", **fields))
    db.session.add(Contact(email=f"{user_id}@northwind-partners.com", partner_id=partner.id, lms_user_id=user_id))
    db.session.commit()


@pytest.fixture
def enrollment_step(orchestrator, lms_client):
    return EnrollmentSync(lms_client, audit=orchestrator.audit, settings=orchestrator.settings, session=db.session)


# ----------------------------------------------------------------------
# Selection
# ----------------------------------------------------------------------


@pytest.mark.parametrize(
    "synced, last_active, group_add, expected",
    [
        (None, None, None, SelectionReason.NEW),
        (NOW - timedelta(days=1), NOW - timedelta(hours=1), None, SelectionReason.UPDATED),
        (NOW - timedelta(days=1), None, NOW - timedelta(hours=2), SelectionReason.NEW_GROUP_MEMBER),
        (NOW - timedelta(days=8), None, None, SelectionReason.STALE),
        (NOW - timedelta(days=1), NOW - timedelta(days=2), NOW - timedelta(days=3), None),
    ],
)
def test_selection_reason(synced, last_active, group_add, expected):
    user = LmsUser(id="p1", enrollment_synced_at=synced, last_active_at=last_active)
    assert selection_reason(user, latest_group_add=group_add, now=NOW, stale_after=STALE_AFTER) == expected


def test_selection_compares_naive_values_as_utc():
    user = LmsUser(id="p1", enrollment_synced_at=datetime(2024, 5, 31, 12, 0), last_active_at=None)
    assert selection_reason(user, latest_group_add=None, now=NOW, stale_after=STALE_AFTER) is None


def test_partner_users_cover_contacts_and_partner_groups(enrollment_step, partner):
    add_linked_user(partner, "p1")
    db.session.add_all(
        [
            LmsUser(id="p2", email="grouped@northwind-partners.com"),
            LmsUser(id="p3", email="outsider@other-company.com"),
            LmsUser(id="p4", email="gone@northwind-partners.com", status=LmsUserStatus.DELETED),
            LmsGroup(id="g1", name="ptr_Northwind Traders", partner_id=partner.id),
            LmsGroup(id="g2", name="All Partners"),
        ]
    )
    db.session.flush()
    db.session.add_all(
        [
            LmsGroupMember(group_id="g1", user_id="p2"),
            LmsGroupMember(group_id="g1", user_id="p4"),
            LmsGroupMember(group_id="g2", user_id="p3"),
        ]
    )
    db.session.commit()

    assert [user.id for user in enrollment_step.partner_users()] == ["p1", "p2"]


def test_incremental_selection_skips_fresh_users(enrollment_step, partner):
    recent = datetime.now(timezone.utc) - timedelta(hours=1)
    add_linked_user(partner, "p1")
    add_linked_user(partner, "p2", enrollment_synced_at=recent)

    selected = enrollment_step.select_users(SyncMode.INCREMENTAL)

    assert [(user.id, reason) for user, reason in selected] == [("p1", SelectionReason.NEW)]
    assert len(enrollment_step.select_users(SyncMode.FULL)) == 2


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------


def test_transcripts_are_upserted(enrollment_step, partner, fake_session):
    add_linked_user(partner, "p1")
    fake_session.lms_collection(
        "/v2/transcripts/p1",
        [
            transcript("t1", "c1", progress="completed", completed_at="2024-05-01T10:00:00Z", score=92.5),
            transcript("t2", "c2", progress="in_progress"),
            transcript("t3", "c3", progress=None),
            transcript("t4", "lp1", resource_type="learning_path"),
        ],
        url=transcripts_url("p1"),
    )

    stats = enrollment_step.run(SyncMode.FULL)

    assert stats.created == 3
    assert stats.details["users_synced"] == 1
    assert stats.details["non_course_transcripts"] == 1
    assert stats.details["selection"] == {"all": 1}
    completed = db.session.get(LmsEnrollment, "t1")
    assert completed.status is EnrollmentStatus.COMPLETED
    assert completed.progress_percent == 100
    assert completed.score == 92.5
    assert as_utc(completed.completed_at) == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert db.session.get(LmsEnrollment, "t2").progress_percent == 50
    assert db.session.get(LmsEnrollment, "t3").status is EnrollmentStatus.ENROLLED
    assert db.session.get(LmsUser, "p1").enrollment_synced_at is not None

    again = enrollment_step.run(SyncMode.FULL)
    assert again.created == 0
    assert again.unchanged == 3


def test_status_is_recomputed_on_every_sync(enrollment_step, partner, fake_session):
    add_linked_user(partner, "p1")
    url = transcripts_url("p1")
    fake_session.lms_collection("/v2/transcripts/p1", [transcript("t1", "c1", progress="in_progress")], url=url)
    enrollment_step.run(SyncMode.FULL)

    fake_session.routes.pop(("GET", url))
    fake_session.lms_collection("/v2/transcripts/p1", [transcript("t1", "c1", progress="completed")], url=url)
    stats = enrollment_step.run(SyncMode.FULL)

    assert stats.updated == 1
    assert db.session.get(LmsEnrollment, "t1").status is EnrollmentStatus.COMPLETED


def test_unknown_progress_status_is_a_row_failure(enrollment_step, partner, fake_session):
    add_linked_user(partner, "p1")
    fake_session.lms_collection(
        "/v2/transcripts/p1",
        [transcript("t1", "c1", progress="paused"), transcript("t2", "c2")],
        url=transcripts_url("p1"),
    )

    stats = enrollment_step.run(SyncMode.FULL)

    assert stats.failed == 1
    assert stats.created == 1
    failure = SyncFailure.query.one()
    assert failure.entity_id == "t1"
    assert "paused" in failure.failure_reason


def test_missing_user_is_churn_not_error(enrollment_step, partner, fake_session):
    add_linked_user(partner, "p1")
    add_linked_user(partner, "p2")
    fake_session.lms_collection("/v2/transcripts/p2", [], url=transcripts_url("p2"))

    stats = enrollment_step.run(SyncMode.FULL)

    assert stats.details["users_not_found"] == 1
    assert stats.details["users_synced"] == 1
    assert stats.details["api_errors"] == 0
    assert stats.failed == 0
    assert db.session.get(LmsUser, "p1").enrollment_synced_at is not None


def test_error_rate_abort(enrollment_step, partner, fake_session):
    for index in range(5):
        user_id = f"p{index}"
        add_linked_user(partner, user_id)
        fake_session.add_status("GET", transcripts_url(user_id), 500)

    with pytest.raises(SyncAbortedError):
        enrollment_step.run(SyncMode.FULL)

    run = SyncRun.query.one()
    assert run.status is SyncRunStatus.FAILED
    assert run.details["details"]["api_errors"] == 3
    assert run.details["details"]["users_synced"] == 0
    assert SyncFailure.query.count() == 3


def test_errors_below_success_count_do_not_abort(enrollment_step, partner, fake_session):
    for index in range(8):
        user_id = f"p{index}"
        add_linked_user(partner, user_id)
        if index < 5:
            fake_session.lms_collection(f"/v2/transcripts/{user_id}", [], url=transcripts_url(user_id))
        else:
            fake_session.add_status("GET", transcripts_url(user_id), 500)

    stats = enrollment_step.run(SyncMode.FULL)

    assert stats.details["users_synced"] == 5
    assert stats.details["api_errors"] == 3
    assert stats.failed == 3
