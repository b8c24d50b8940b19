from datetime import datetime, timedelta, timezone

import pytest

from partner_sync.models import (
    Contact,
    DeletionReason,
    LmsGroup,
    LmsGroupMember,
    LmsUser,
    LmsUserStatus,
    Partner,
    PartnerTier,
    SyncMode,
    db,
)
from partner_sync.sync.pipeline import GroupMembershipSync, LmsGroupSync, LmsUserSync, link_contacts_to_lms_users
from partner_sync.sync.session_cache import SyncSessionCache
from partner_sync.utils.timeutils import as_utc

LMS_BASE = "https://lms.test"


def person(person_id, email, **attributes):
    attributes.update(email=email, first_name="Jane", last_name="Doe")
    return {"id": person_id, "type": "people", "attributes": attributes}


def group(group_id, name, user_count=0, description=None):
    return {
        "id": group_id,
        "type": "groups",
        "attributes": {"name": name, "description": description, "user_count": user_count},
    }


def membership(user_id):
    return {"id": f"m-{user_id}", "relationships": {"person": {"data": {"id": user_id, "type": "people"}}}}


def serve(fake_session, path, records, **kwargs):
    fake_session.routes.pop(("GET", f"{LMS_BASE}{path}"), None)
    fake_session.lms_collection(path, records, **kwargs)


def step_options(orchestrator):
    return {
        "audit": orchestrator.audit,
        "settings": orchestrator.settings,
        "rules": orchestrator.rules,
        "session": db.session,
    }


@pytest.fixture
def user_step(orchestrator, lms_client):
    return LmsUserSync(lms_client, **step_options(orchestrator))


@pytest.fixture
def group_step(orchestrator, lms_client):
    return LmsGroupSync(lms_client, **step_options(orchestrator))


@pytest.fixture
def member_step(orchestrator, lms_client):
    return GroupMembershipSync(lms_client, **step_options(orchestrator))


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------


def test_user_sync_creates_users_and_fills_cache(user_step, fake_session):
    serve(
        fake_session,
        "/v2/people",
        [
            person("p1", "Jane@Northwind-Partners.com", created_at="2024-01-02T03:04:05Z"),
            person("p2", "max@contoso-partners.com", deactivated_at="2024-05-01T00:00:00Z"),
        ],
    )
    cache = SyncSessionCache("s1")

    stats = user_step.run(SyncMode.FULL, cache=cache)

    assert stats.created == 2
    jane = db.session.get(LmsUser, "p1")
    assert jane.email == "jane@northwind-partners.com"
    assert as_utc(jane.lms_created_at) == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert jane.status is LmsUserStatus.ACTIVE
    assert db.session.get(LmsUser, "p2").status is LmsUserStatus.DEACTIVATED
    assert len(cache.get_users()) == 2


def test_user_sync_is_idempotent(user_step, fake_session):
    serve(fake_session, "/v2/people", [person("p1", "jane@northwind-partners.com", created_at="2024-01-02T03:04:05Z")])
    user_step.run(SyncMode.FULL)

    stats = user_step.run(SyncMode.FULL)

    assert stats.created == 0
    assert stats.updated == 0
    assert stats.unchanged == 1


def test_full_user_sync_marks_missing_users_deleted(user_step, fake_session):
    db.session.add(LmsUser(id="p-old", email="old@northwind-partners.com"))
    db.session.commit()
    serve(fake_session, "/v2/people", [person("p1", "jane@northwind-partners.com")])

    stats = user_step.run(SyncMode.FULL)

    assert stats.deleted == 1
    assert db.session.get(LmsUser, "p-old").status is LmsUserStatus.DELETED


def test_incremental_user_sync_keeps_missing_users(user_step, fake_session):
    db.session.add(LmsUser(id="p-old", email="old@northwind-partners.com"))
    db.session.commit()
    serve(fake_session, "/v2/people", [person("p1", "jane@northwind-partners.com")])
    user_step.run(SyncMode.FULL)
    db.session.get(LmsUser, "p-old").status = LmsUserStatus.ACTIVE
    db.session.commit()

    stats = user_step.run(SyncMode.INCREMENTAL)

    assert stats.mode is SyncMode.INCREMENTAL
    assert "filter[updated_at][gteq]" in fake_session.calls[-1].params
    assert stats.deleted == 0
    assert db.session.get(LmsUser, "p-old").status is LmsUserStatus.ACTIVE


def test_user_sync_links_contacts_by_email(user_step, fake_session):
    db.session.add_all(
        [
            Contact(email="jane@northwind-partners.com"),
            Contact(email="max@contoso-partners.com", lms_user_id="already-linked"),
        ]
    )
    db.session.commit()
    serve(
        fake_session,
        "/v2/people",
        [person("p1", "JANE@northwind-partners.com"), person("p2", "max@contoso-partners.com")],
    )

    stats = user_step.run(SyncMode.FULL)

    assert stats.details["contacts_linked"] == 1
    assert Contact.query.filter_by(email="jane@northwind-partners.com").one().lms_user_id == "p1"
    assert Contact.query.filter_by(email="max@contoso-partners.com").one().lms_user_id == "already-linked"


def test_link_contacts_skips_deleted_users():
    db.session.add_all(
        [
            LmsUser(id="p1", email="jane@northwind-partners.com", status=LmsUserStatus.DELETED),
            Contact(email="jane@northwind-partners.com"),
        ]
    )
    db.session.commit()

    assert link_contacts_to_lms_users(db.session) == 0


# ----------------------------------------------------------------------
# Groups
# ----------------------------------------------------------------------


@pytest.fixture
def northwind():
    partner = Partner(name="Northwind Traders", tier=PartnerTier.PREMIER, prm_id="100")
    db.session.add(partner)
    db.session.commit()
    return partner


def test_group_sync_binds_partner_groups(group_step, fake_session, northwind):
    serve(
        fake_session,
        "/v2/groups",
        [
            group("g1", "ptr_Northwind Traders", user_count=4),
            group("g2", "All Partners", user_count=10),
            group("g3", "Internal Staff"),
            group("g4", "Northwind Traders"),
        ],
    )
    cache = SyncSessionCache("s1")

    stats = group_step.run(SyncMode.INCREMENTAL, cache=cache)

    assert stats.mode is SyncMode.FULL
    assert stats.created == 3
    assert stats.details["filter"]["reasons"] == {"excludedGroup": 1}
    assert db.session.get(LmsGroup, "g1").partner_id == northwind.id
    assert db.session.get(LmsGroup, "g4").partner_id == northwind.id
    assert db.session.get(LmsGroup, "g2").partner_id is None
    assert db.session.get(LmsGroup, "g3") is None
    # Member counts are owned by the membership step.
    assert db.session.get(LmsGroup, "g1").user_count == 0
    assert cache.get_group_counts() == {"g1": 4, "g2": 10, "g3": 0, "g4": 0}
    assert cache.get_partner_group_id(northwind.id) == "g1"


def test_group_sync_soft_deletes_missing_and_reactivates(group_step, fake_session):
    db.session.add_all(
        [
            LmsGroup(id="g-old", name="ptr_Old Partner"),
            LmsGroup(id="g-back", name="ptr_Back Again", is_active=False, deletion_reason="removed"),
            LmsGroup(id="g-int", name="Internal Staff"),
        ]
    )
    db.session.commit()
    serve(fake_session, "/v2/groups", [group("g-back", "ptr_Back Again"), group("g-int", "Internal Staff")])

    stats = group_step.run(SyncMode.FULL)

    assert stats.reactivated == 1
    assert stats.deleted == 2
    assert db.session.get(LmsGroup, "g-back").is_active
    assert db.session.get(LmsGroup, "g-old").deletion_reason == DeletionReason.REMOVED.value
    assert db.session.get(LmsGroup, "g-int").deletion_reason == DeletionReason.FILTERED.value


# ----------------------------------------------------------------------
# Memberships
# ----------------------------------------------------------------------


def test_membership_refresh_replaces_members_and_keeps_added_at(member_step, fake_session):
    original = datetime(2024, 1, 1, tzinfo=timezone.utc)
    db.session.add(LmsGroup(id="g1", name="ptr_Northwind Traders", user_count=2))
    db.session.add_all(
        [
            LmsGroupMember(group_id="g1", user_id="p1", added_at=original),
            LmsGroupMember(group_id="g1", user_id="p2", added_at=original),
        ]
    )
    db.session.commit()
    cache = SyncSessionCache("s1")
    cache.set_groups([group("g1", "ptr_Northwind Traders", user_count=3)])
    serve(fake_session, "/v2/groups/g1/memberships", [membership("p1"), membership("p3"), membership("p4")])

    stats = member_step.run(SyncMode.INCREMENTAL, cache=cache)

    assert stats.updated == 1
    assert stats.details["members_added"] == 2
    assert stats.details["members_removed"] == 1
    assert stats.details["counts_from_cache"] == 1
    members = {member.user_id: member for member in LmsGroupMember.query.filter_by(group_id="g1")}
    assert sorted(members) == ["p1", "p3", "p4"]
    assert as_utc(members["p1"].added_at) == original
    assert as_utc(members["p3"].added_at) > original
    group_row = db.session.get(LmsGroup, "g1")
    assert group_row.user_count == 3
    assert group_row.last_checked_at is not None


def test_membership_unchanged_count_skips_fetch(member_step, fake_session):
    db.session.add(LmsGroup(id="g1", name="ptr_Northwind Traders", user_count=2))
    db.session.commit()
    fake_session.add_json("GET", f"{LMS_BASE}/v2/groups/g1", {"data": {"id": "g1", "attributes": {"user_count": 2}}})

    stats = member_step.run(SyncMode.INCREMENTAL)

    assert stats.unchanged == 1
    assert stats.details["count_lookups"] == 1
    assert fake_session.calls_to("GET", f"{LMS_BASE}/v2/groups/g1/memberships") == []
    assert db.session.get(LmsGroup, "g1").last_checked_at is not None


def test_full_membership_sync_refreshes_every_group(member_step, fake_session):
    db.session.add(LmsGroup(id="g1", name="ptr_Northwind Traders", user_count=1))
    db.session.add(LmsGroupMember(group_id="g1", user_id="p1"))
    db.session.commit()
    serve(fake_session, "/v2/groups/g1/memberships", [membership("p1")])

    stats = member_step.run(SyncMode.FULL)

    assert stats.details["count_lookups"] == 0
    assert stats.details["groups_refreshed"] == 1
    assert stats.details["members_added"] == 0
    assert fake_session.calls_to("GET", f"{LMS_BASE}/v2/groups/g1") == []


def test_group_missing_in_lms_is_soft_deleted(member_step, fake_session):
    db.session.add(LmsGroup(id="g-gone", name="ptr_Gone Partner", user_count=3))
    db.session.commit()

    stats = member_step.run(SyncMode.INCREMENTAL)

    assert stats.deleted == 1
    assert stats.details["groups_not_found"] == 1
    row = db.session.get(LmsGroup, "g-gone")
    assert not row.is_active
    assert row.deletion_reason == DeletionReason.NOT_FOUND_IN_LMS.value
    # A missing group is churn, not an API failure.
    assert member_step.lms.health.consecutive_failures == 0


def test_incomplete_member_list_is_a_failure(member_step, fake_session):
    db.session.add(LmsGroup(id="g1", name="ptr_Northwind Traders", user_count=1))
    db.session.add(LmsGroupMember(group_id="g1", user_id="p1"))
    db.session.commit()
    next_url = f"{LMS_BASE}/v2/groups/g1/memberships?page=2"
    serve(fake_session, "/v2/groups/g1/memberships", [membership("p2")], next_url=next_url)
    fake_session.add_status("GET", next_url, 500)

    stats = member_step.run(SyncMode.FULL)

    assert stats.failed == 1
    assert [member.user_id for member in LmsGroupMember.query.all()] == ["p1"]


def test_stale_check_uses_last_checked_timestamp(member_step, fake_session):
    checked = datetime.now(timezone.utc) - timedelta(days=1)
    db.session.add(LmsGroup(id="g1", name="ptr_Northwind Traders", user_count=0, last_checked_at=checked))
    db.session.commit()
    cache = SyncSessionCache("s1")
    cache.set_groups([group("g1", "ptr_Northwind Traders", user_count=0)])

    member_step.run(SyncMode.INCREMENTAL, cache=cache)

    assert as_utc(db.session.get(LmsGroup, "g1").last_checked_at) > checked
