import json

import pytest

from config.filter_rules import DEFAULT_RULES, FilterRulesConfigError, coerce_rules, load_filter_rules


def test_defaults_without_override():
    rules = load_filter_rules({})
    assert rules == DEFAULT_RULES
    assert "Premier Plus" in rules.valid_tiers
    assert "Select" not in rules.valid_tiers
    assert rules.partner_group_prefix == "ptr_"
    assert rules.all_partners_group_name == "All Partners"


def test_yaml_override_keeps_missing_keys(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("excluded_email_domains:\n  - acme-internal.io\nvalid_tiers: [Premier]\n")

    rules = load_filter_rules({"SYNC_FILTER_RULES_PATH": str(path)})

    assert rules.excluded_email_domains == ("acme-internal.io",)
    assert rules.valid_tiers == ("Premier",)
    assert rules.excluded_email_patterns == DEFAULT_RULES.excluded_email_patterns


def test_json_override(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text(json.dumps({"partner_group_prefix": "partner-"}))

    rules = load_filter_rules({"SYNC_FILTER_RULES_PATH": str(path)})

    assert rules.partner_group_prefix == "partner-"


def test_all_partners_group_name_from_config():
    rules = load_filter_rules({"SYNC_ALL_PARTNERS_GROUP_NAME": "Partner Community"})
    assert rules.all_partners_group_name == "Partner Community"


def test_missing_override_file(tmp_path):
    with pytest.raises(FilterRulesConfigError):
        load_filter_rules({"SYNC_FILTER_RULES_PATH": str(tmp_path / "missing.yaml")})


def test_invalid_yaml_is_reported(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("valid_tiers: [Premier\n")
    with pytest.raises(FilterRulesConfigError):
        load_filter_rules({"SYNC_FILTER_RULES_PATH": str(path)})


def test_override_must_be_mapping(tmp_path):
    path = tmp_path / "rules.json"
    path.write_text("[1, 2]")
    with pytest.raises(FilterRulesConfigError):
        load_filter_rules({"SYNC_FILTER_RULES_PATH": str(path)})


@pytest.mark.parametrize(
    "raw",
    [
        {"unknown_key": ["x"]},
        {"valid_tiers": "Premier"},
        {"valid_tiers": ["Premier", "Gold"]},
        {"partner_group_prefix": "  "},
    ],
)
def test_coerce_rules_rejects_bad_values(raw):
    with pytest.raises(FilterRulesConfigError):
        coerce_rules(raw)


def test_valid_tiers_are_canonicalized():
    rules = coerce_rules({"valid_tiers": ["premier  plus", "CERTIFIED"]})
    assert rules.valid_tiers == ("Premier Plus", "Certified")


def test_unknown_tier_in_override_file_fails_loading(tmp_path):
    path = tmp_path / "rules.yaml"
    path.write_text("valid_tiers: [Premier, Gold]\n")

    with pytest.raises(FilterRulesConfigError, match="Gold"):
        load_filter_rules({"SYNC_FILTER_RULES_PATH": str(path)})
