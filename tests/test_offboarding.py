import pytest

from partner_sync.models import Contact, DeletionReason, LmsGroup, LmsGroupMember, Partner, PartnerTier, db
from partner_sync.sync.offboarding import OffboardingService

LMS_BASE = "https://lms.test"


def people_url(group_id):
    return f"{LMS_BASE}/v2/groups/{group_id}/relationships/people"


@pytest.fixture
def partner_setup():
    partner = Partner(name="Northwind Traders", tier=PartnerTier.PREMIER, prm_id="100")
    db.session.add(partner)
    db.session.flush()
    db.session.add_all(
        [
            Contact(email="jane@northwind-partners.com", partner_id=partner.id, lms_user_id="u1"),
            Contact(email="max@northwind-partners.com", partner_id=partner.id, lms_user_id="u2"),
            Contact(email="nolms@northwind-partners.com", partner_id=partner.id),
            LmsGroup(id="g-ptr", name="ptr_Northwind Traders", partner_id=partner.id, user_count=2),
            LmsGroup(id="g-all", name="All Partners", user_count=3),
        ]
    )
    db.session.add_all(
        [
            LmsGroupMember(group_id="g-ptr", user_id="u1"),
            LmsGroupMember(group_id="g-ptr", user_id="u3"),
            LmsGroupMember(group_id="g-all", user_id="u1"),
            LmsGroupMember(group_id="g-all", user_id="u2"),
            LmsGroupMember(group_id="g-all", user_id="u9"),
        ]
    )
    db.session.commit()
    return partner


@pytest.fixture
def service(lms_client):
    return OffboardingService(lms_client, session=db.session, batch_size=2)


def member_ids(group_id):
    return sorted(member.user_id for member in db.session.query(LmsGroupMember).filter_by(group_id=group_id))


def test_offboard_contact_removes_from_partner_and_all_partners_groups(partner_setup, service, fake_session):
    fake_session.add_status("DELETE", people_url("g-ptr"), 204)
    fake_session.add_status("DELETE", people_url("g-all"), 204)
    contact = Contact.query.filter_by(email="jane@northwind-partners.com").one()

    result = service.offboard_contact(contact.id)

    assert result.success
    assert result.removed_from_groups == ["g-ptr", "g-all"]
    assert member_ids("g-ptr") == ["u3"]
    assert member_ids("g-all") == ["u2", "u9"]
    call = fake_session.calls_to("DELETE", people_url("g-ptr"))[0]
    assert call.json == {"data": [{"type": "people", "id": "u1"}]}


def test_offboard_contact_without_lms_user_is_noop(partner_setup, service, fake_session):
    contact = Contact.query.filter_by(email="nolms@northwind-partners.com").one()

    result = service.offboard_contact(contact.id)

    assert result.success
    assert "No LMS user" in result.message
    assert fake_session.calls == []


def test_offboard_unknown_contact_fails(service):
    result = service.offboard_contact(999)
    assert not result.success
    assert result.errors == ["Contact 999 not found"]


def test_offboard_contact_reports_removal_errors(partner_setup, service, fake_session):
    fake_session.add_status("DELETE", people_url("g-ptr"), 204)
    fake_session.add_status("DELETE", people_url("g-all"), 403)
    contact = Contact.query.filter_by(email="jane@northwind-partners.com").one()

    result = service.offboard_contact(contact.id)

    assert not result.success
    assert result.removed_from_groups == ["g-ptr"]
    assert "g-all" in result.errors[0]
    # Membership rows stay for the failed removal.
    assert member_ids("g-all") == ["u1", "u2", "u9"]


def test_offboard_partner_removes_users_and_deletes_partner_groups(partner_setup, service, fake_session):
    fake_session.add_status("DELETE", people_url("g-all"), 204)
    fake_session.add_status("DELETE", f"{LMS_BASE}/v2/groups/g-ptr", 204)

    result = service.offboard_partner(partner_setup.id)

    assert result.success
    assert result.lms_user_ids == ["u1", "u2", "u3"]
    assert result.removed_from_groups == ["g-all"]
    assert result.deleted_groups == ["g-ptr"]
    assert member_ids("g-all") == ["u9"]
    assert member_ids("g-ptr") == []

    group = db.session.get(LmsGroup, "g-ptr")
    assert not group.is_active
    assert group.deletion_reason == DeletionReason.PARTNER_OFFBOARDED.value
    assert group.partner_id is None
    assert group.user_count == 0
    # Batches of two: [u1, u2] then [u3].
    assert len(fake_session.calls_to("DELETE", people_url("g-all"))) == 2


def test_offboard_partner_already_deleted_group(partner_setup, service, fake_session):
    fake_session.add_status("DELETE", people_url("g-all"), 204)

    result = service.offboard_partner(partner_setup.id)

    assert result.success
    assert result.deleted_groups == ["g-ptr"]
    assert not db.session.get(LmsGroup, "g-ptr").is_active


def test_failed_batch_falls_back_to_single_removals(partner_setup, service, fake_session):
    def respond(call):
        ids = [item["id"] for item in call.json["data"]]
        if len(ids) > 1 or ids == ["u2"]:
            return fake_session.response(400)
        return fake_session.response(204)

    fake_session.add("DELETE", people_url("g-all"), respond)

    removed, errors = service.remove_users_from_group("g-all", ["u1", "u2", "u9"])

    assert removed == ["u1", "u9"]
    assert len(errors) == 1
    assert "u2" in errors[0]
    assert member_ids("g-all") == ["u2"]


def test_partner_group_deletion_failure_keeps_local_group(partner_setup, service, fake_session):
    fake_session.add_status("DELETE", people_url("g-all"), 204)
    fake_session.add_status("DELETE", f"{LMS_BASE}/v2/groups/g-ptr", 403)

    result = service.offboard_partner(partner_setup.id)

    assert not result.success
    assert result.deleted_groups == []
    assert db.session.get(LmsGroup, "g-ptr").is_active


def test_batch_offboarding_counts(partner_setup, service, fake_session):
    fake_session.add_status("DELETE", people_url("g-ptr"), 204)
    fake_session.add_status("DELETE", people_url("g-all"), 204)
    contact_ids = [contact.id for contact in Contact.query.order_by(Contact.id)]

    batch = service.offboard_contacts(contact_ids + [999])

    payload = batch.to_dict()
    assert payload["total"] == 4
    assert payload["succeeded"] == 3
    assert payload["failed"] == 1
