import pytest

from partner_sync.sync.records import PrmAccount, PrmUser


def test_account_payload_accepts_lower_camel_keys():
    account = PrmAccount.from_payload(
        {"id": 100, "name": " Northwind Traders ", "partner_Tier__cf": "Premier", "parentAccountId": {"id": 7}}
    )

    assert account.id == "100"
    assert account.name == "Northwind Traders"
    assert account.tier == "Premier"
    assert account.parent_id == "7"


@pytest.mark.parametrize("parse", [PrmAccount.from_payload, PrmUser.from_payload])
@pytest.mark.parametrize("payload", [{"Name": "No Id Inc", "Email": "x@northwind-partners.com"}, {"Id": "  "}])
def test_payload_without_id_is_rejected(parse, payload):
    with pytest.raises(KeyError):
        parse(payload)


@pytest.mark.parametrize(
    "raw, expected",
    [
        (True, True),
        (False, False),
        ("true", True),
        ("False", False),
        ("0", False),
        (1, True),
        ("maybe", None),
        (None, None),
    ],
)
def test_user_active_flag_is_parsed(raw, expected):
    payload = {"Id": 5, "Email": "Jane@Northwind-Partners.com"}
    if raw is not None:
        payload["IsActive"] = raw

    user = PrmUser.from_payload(payload)

    assert user.is_active is expected
    assert user.email == "jane@northwind-partners.com"
