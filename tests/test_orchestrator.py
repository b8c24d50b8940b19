import pytest

from partner_sync.models import (
    Contact,
    EnrollmentStatus,
    LmsCourse,
    LmsEnrollment,
    LmsGroup,
    Partner,
    SyncRun,
    SyncRunStatus,
    db,
)
from partner_sync.sync.errors import ApiError, CircuitOpenError
from partner_sync.sync.pipeline import (
    ContactSync,
    CoursePropertySync,
    CourseSync,
    EnrollmentSync,
    GroupMembershipSync,
    LmsGroupSync,
    LmsUserSync,
    PartnerSync,
)

PRM_BASE = "https://prm.test/api/objects/v1"
LMS_BASE = "https://lms.test"


def serve_prm(fake_session):
    fake_session.prm_collection(
        "Account",
        [
            {"Id": 100, "Name": "Northwind Traders", "Partner_Tier__cf": "Premier", "Account_Status__cf": "Active"},
            {"Id": 101, "Name": "Dormant Co", "Partner_Tier__cf": "Premier", "Account_Status__cf": "Inactive"},
        ],
    )
    fake_session.prm_collection(
        "User",
        [
            {"Id": "u1", "Email": "jane@northwind-partners.com", "AccountId": 100, "Contact_Status__cf": "Active"},
            {"Id": "u2", "Email": "sales@northwind-partners.com", "AccountId": 100, "Contact_Status__cf": "Active"},
        ],
    )


def serve_lms(fake_session):
    fake_session.lms_collection(
        "/v2/people",
        [{"id": "p1", "type": "people", "attributes": {"email": "Jane@northwind-partners.com"}}],
    )
    fake_session.lms_collection(
        "/v2/groups",
        [{"id": "g1", "type": "groups", "attributes": {"name": "ptr_Northwind Traders", "user_count": 1}}],
    )
    fake_session.lms_collection(
        "/v2/groups/g1/memberships",
        [{"id": "m1", "relationships": {"person": {"data": {"id": "p1", "type": "people"}}}}],
    )
    fake_session.lms_collection(
        "/v2/courses", [{"id": "c1", "type": "courses", "attributes": {"name": "Platform Basics"}}]
    )
    fake_session.lms_collection("/v2/properties/courses", [{"id": "c1", "attributes": {"properties": {"npcu": 1}}}])
    fake_session.lms_collection(
        "/v2/transcripts/p1",
        [
            {
                "id": "t1",
                "attributes": {"resource_id": "c1", "resource_type": "course", "progress_status": "completed"},
            }
        ],
    )


def test_prm_chain_runs_partners_then_contacts(orchestrator, fake_session):
    serve_prm(fake_session)

    result = orchestrator.run_prm_sync("full")

    assert result["requested_mode"] == "full"
    assert list(result["steps"]) == [PartnerSync.sync_type, ContactSync.sync_type]
    assert result["steps"][PartnerSync.sync_type]["created"] == 1
    assert result["steps"][ContactSync.sync_type]["created"] == 1
    jane = Contact.query.filter_by(prm_id="u1").one()
    assert jane.partner.name == "Northwind Traders"


def test_prm_chain_stops_at_failed_step(orchestrator, fake_session):
    fake_session.add_status("GET", f"{PRM_BASE}/Account", 401)

    with pytest.raises(ApiError):
        orchestrator.run_prm_sync("full")

    assert [call.url for call in fake_session.calls] == [f"{PRM_BASE}/Account"]
    run = SyncRun.query.one()
    assert run.sync_type == PartnerSync.sync_type
    assert run.status is SyncRunStatus.FAILED


def test_lms_chain_end_to_end(orchestrator, fake_session):
    serve_prm(fake_session)
    orchestrator.run_prm_sync("full")
    serve_lms(fake_session)

    result = orchestrator.run_lms_sync("incremental")

    assert list(result["steps"]) == [
        LmsUserSync.sync_type,
        LmsGroupSync.sync_type,
        GroupMembershipSync.sync_type,
        CourseSync.sync_type,
        CoursePropertySync.sync_type,
        EnrollmentSync.sync_type,
    ]
    assert result["steps"][LmsUserSync.sync_type]["details"]["contacts_linked"] == 1
    assert result["contacts_linked"] == 0

    northwind = Partner.query.filter_by(prm_id="100").one()
    assert db.session.get(LmsGroup, "g1").partner_id == northwind.id
    assert [member.user_id for member in db.session.get(LmsGroup, "g1").members] == ["p1"]
    assert db.session.get(LmsCourse, "c1").is_certification
    assert db.session.get(LmsEnrollment, "t1").status is EnrollmentStatus.COMPLETED

    assert result["cache"]["cache_hits"] >= 1
    assert result["cache"]["session_id"]
    assert fake_session.calls_to("GET", f"{LMS_BASE}/v2/groups/g1") == []


def test_lms_chain_refuses_to_start_with_open_circuit(orchestrator, fake_session):
    for _ in range(orchestrator.lms.health.threshold):
        orchestrator.lms.health.record_failure("down")

    with pytest.raises(CircuitOpenError):
        orchestrator.run_lms_sync("full")

    assert fake_session.calls == []
    assert SyncRun.query.count() == 0


def test_status_reports_runs_health_and_counts(orchestrator, fake_session):
    serve_prm(fake_session)
    orchestrator.run_prm_sync("full")

    status = orchestrator.status()

    assert status["runs"][PartnerSync.sync_type]["status"] == "completed"
    assert status["last_successful"][ContactSync.sync_type] is not None
    assert status["last_successful"][EnrollmentSync.sync_type] is None
    assert status["health"]["prm"]["is_healthy"] is True
    assert status["counts"]["partners"] == 1
    assert status["counts"]["contacts"] == 1


def test_preview_classifies_without_writing(orchestrator, fake_session):
    serve_prm(fake_session)

    preview = orchestrator.preview(sample_size=5)

    assert preview["complete"] is True
    assert preview["partners"]["valid"] == 1
    assert preview["partners"]["reasons"] == {"inactive": 1}
    assert preview["contacts"]["filtered"] == 1
    assert preview["contacts"]["filtered_sample"][0]["reason"] == "excludedPattern"
    assert Partner.query.count() == 0
    assert SyncRun.query.count() == 0
