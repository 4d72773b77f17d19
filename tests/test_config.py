import pytest
import yaml

from keystone.config import (
    ConfigurationError,
    _apply_environment_overrides,
    config_from_dict,
    config_to_dict,
    ensure_default_config,
    load_config,
    REDACTED,
)


def _write(path, data):
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def test_load_config_reads_yaml(tmp_path, config_data):
    config = load_config(_write(tmp_path / "settings.yaml", config_data))

    assert config.forest_root_domain == "corp.local"
    assert config.domains == ("corp.local", "emea.corp.local")
    assert config.ldap.is_mock
    assert config.provisioning.admin_group == "Tier1Admins"
    assert config.provisioning.default_group == "Domain Users"
    assert config.provisioning.primary_group_attempts == 4
    assert config.provisioning.primary_group_retry_delay == pytest.approx(0.6)
    assert config.provisioning.optional_groups == ("Finance", "FinanceAdmins")


def test_environment_overrides_are_deep_merged(tmp_path, monkeypatch, config_data):
    path = _write(tmp_path / "settings.yaml", config_data)
    monkeypatch.setenv("KEYSTONE_LDAP__PASSWORD", "from-env")
    monkeypatch.setenv("KEYSTONE_PROVISIONING__PRIMARY_GROUP_ATTEMPTS", "2")

    config = load_config(path)

    assert config.ldap.password == "from-env"
    assert config.ldap.user_dn == "svc-keystone@corp.local"
    assert config.provisioning.primary_group_attempts == 2


def test_caller_sid_variable_is_not_treated_as_an_override(monkeypatch):
    monkeypatch.setenv("KEYSTONE_CALLER_SIDS", "S-1-5-21-1-2-3-4")
    monkeypatch.setenv("KEYSTONE_CONFIG", "elsewhere.yaml")
    assert _apply_environment_overrides({}) == {}


def test_comma_separated_strings_become_tuples(config_data):
    config_data["domains"] = "corp.local, emea.corp.local"
    config_data["provisioning"]["optional_groups_general"] = "Finance, HR"

    config = config_from_dict(config_data)

    assert config.domains == ("corp.local", "emea.corp.local")
    assert config.provisioning.optional_groups_general == ("Finance", "HR")


def test_missing_ldap_section_is_reported(config_data):
    del config_data["ldap"]
    with pytest.raises(ConfigurationError, match="ldap"):
        config_from_dict(config_data)


def test_unknown_retirement_policy_is_rejected(config_data):
    config_data["provisioning"]["admin_account_retirement"] = "archive"
    with pytest.raises(ConfigurationError, match="admin_account_retirement"):
        config_from_dict(config_data)


def test_domain_controller_override_wins_over_template(config_data):
    config_data["ldap"]["server_uri"] = "ldaps://{domain}"
    config_data["ldap"]["domain_controllers"] = {"EMEA.corp.local": "ldaps://dc01.emea.corp.local"}

    ldap = config_from_dict(config_data).ldap

    assert ldap.uri_for("emea.corp.local") == "ldaps://dc01.emea.corp.local"
    assert ldap.uri_for("corp.local") == "ldaps://corp.local"


def test_config_to_dict_redacts_secrets(config):
    payload = config_to_dict(config, redact=True)

    assert payload["ldap"]["password"] == REDACTED
    assert payload["web"]["secret_key"] == REDACTED
    assert config_from_dict(config_to_dict(config)) == config


def test_ensure_default_config_copies_template(tmp_path, config_data):
    template = _write(tmp_path / "settings.example.yaml", config_data)
    target = tmp_path / "config" / "settings.yaml"

    assert ensure_default_config(target, template) == target
    assert load_config(target).domains == ("corp.local", "emea.corp.local")


def test_missing_file_raises(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "absent.yaml")
