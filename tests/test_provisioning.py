import logging
from datetime import datetime, timedelta, timezone

import pytest

from conftest import (
    BJONES_ADMIN_DN,
    DOMAIN_USERS_DN,
    FINANCE_ADMINS_DN,
    FINANCE_DN,
    TIER1_DN,
)
from keystone.config import config_from_dict
from keystone.errors import ConnectivityError, DirectoryOperationFailed, NotFound, PermissionDenied
from keystone.models import (
    CreateUserRequest,
    IdentityType,
    ResetAdminPasswordRequest,
    UpdateUserRequest,
    UserActionRequest,
)
from keystone.provisioning import AccountService


def _find(directory, sam, domain="corp.local"):
    record = directory.find("users", domain, None, IdentityType.SAM_ACCOUNT_NAME, sam)
    assert record is not None, sam
    return record


def _create_request(**overrides):
    values = dict(
        domain="corp.local",
        first_name="Jane",
        last_name="Doe",
        sam_account_name="jdoe",
        optional_groups=["Finance"],
        create_admin_account=True,
    )
    values.update(overrides)
    return CreateUserRequest(**values)


# Creation ---------------------------------------------------------------------
def test_general_caller_cannot_request_optional_groups(service, general_caller, directory):
    request = _create_request(optional_groups=["FinanceAdmins"], create_admin_account=False)

    with pytest.raises(PermissionDenied):
        service.create_user(general_caller, request)

    assert directory.find("users", "corp.local", None, IdentityType.SAM_ACCOUNT_NAME, "jdoe") is None


def test_general_caller_can_create_plain_account(service, general_caller, directory):
    response = service.create_user(
        general_caller, _create_request(optional_groups=[], create_admin_account=False)
    )

    dn, attributes = _find(directory, "jdoe")
    assert dn == "CN=Jane Doe,OU=Users,DC=corp,DC=local"
    assert attributes["userAccountControl"] == 512
    assert attributes["pwdLastSet"] == 0
    assert attributes["unicodePwd"] == response.initial_password
    assert response.admin_account is None


def test_denied_caller_cannot_create(service, denied_caller):
    with pytest.raises(PermissionDenied):
        service.create_user(denied_caller, _create_request(optional_groups=[], create_admin_account=False))


def test_groups_outside_allow_list_are_rejected_before_any_write(service, high_caller, directory):
    with pytest.raises(PermissionDenied, match="Tier1Admins"):
        service.create_user(high_caller, _create_request(optional_groups=["Tier1Admins"]))

    assert directory.find("users", "corp.local", None, IdentityType.SAM_ACCOUNT_NAME, "jdoe") is None


def test_create_with_admin_account(service, high_caller, directory):
    response = service.create_user(high_caller, _create_request())

    assert response.user_account.sam_account_name == "jdoe"
    assert response.user_account.user_principal_name == "jdoe@corp.local"
    assert response.initial_password
    assert response.admin_account.sam_account_name == "jdoe-a"
    assert response.admin_account.display_name == "admin-janedoe"
    assert response.admin_initial_password
    assert response.admin_initial_password != response.initial_password
    assert response.groups_associated == ["Finance"]
    assert response.outcome.succeeded

    user_dn, _ = _find(directory, "jdoe")
    admin_dn, admin = _find(directory, "jdoe-a")
    assert admin_dn == "CN=admin-janedoe,OU=Admins,DC=corp,DC=local"
    assert admin["userAccountControl"] == 512
    assert admin["primaryGroupID"] == 1101
    assert directory.is_member(FINANCE_DN, user_dn)
    assert directory.is_member(FINANCE_DN, admin_dn)
    assert directory.is_member(TIER1_DN, admin_dn)
    assert not directory.is_member(DOMAIN_USERS_DN, admin_dn)
    assert directory.is_member(DOMAIN_USERS_DN, user_dn)


def test_admin_account_expires_after_configured_lifetime(service, high_caller, directory):
    service.create_user(high_caller, _create_request())

    with service.factory.open("corp.local") as session:
        admin = session.find_user(IdentityType.SAM_ACCOUNT_NAME, "jdoe-a")

    expected = datetime.now(timezone.utc) + timedelta(days=30)
    assert abs(admin.account_expires - expected) < timedelta(minutes=5)


def test_primary_group_exhaustion_still_returns_details(service, high_caller, directory, monkeypatch, sleeps, caplog):
    def busy(user_dn, rid):
        raise DirectoryOperationFailed("Server busy.", "busy", 51)

    monkeypatch.setattr(directory, "set_primary_group", busy)

    with caplog.at_level(logging.ERROR, logger="keystone.primary_group"):
        response = service.create_user(high_caller, _create_request())

    assert response.initial_password
    assert response.admin_initial_password
    assert response.outcome.status_of("primary_group") == "failed"
    assert "retry_exhausted" in response.outcome.failures[-1].detail
    assert sleeps == pytest.approx([0.6, 1.2, 2.4])
    admin_dn, admin = _find(directory, "jdoe-a")
    assert admin["primaryGroupID"] == 513
    assert directory.is_member(DOMAIN_USERS_DN, admin_dn)
    assert any("failed after 4 attempts" in record.getMessage() for record in caplog.records)


def test_connection_loss_during_primary_group_keeps_admin_details(service, high_caller, directory, monkeypatch, sleeps):
    def reset(user_dn, rid):
        raise ConnectivityError("corp.local", "connection reset by peer")

    monkeypatch.setattr(directory, "set_primary_group", reset)

    response = service.create_user(high_caller, _create_request())

    assert response.admin_account is not None
    assert response.admin_initial_password
    assert response.outcome.status_of("create_admin_account") == "ok"
    assert response.outcome.status_of("primary_group") == "failed"
    assert len(sleeps) == 3
    _, admin = _find(directory, "jdoe-a")
    assert admin["unicodePwd"] == response.admin_initial_password
    assert admin["primaryGroupID"] == 513


def test_admin_account_failure_is_reported_not_raised(service, high_caller, directory):
    directory.add_user("CN=Someone Else,OU=Admins,DC=corp,DC=local", {"sAMAccountName": "jdoe-a"})

    response = service.create_user(high_caller, _create_request())

    assert response.admin_account is None
    assert response.outcome.status_of("create_admin_account") == "failed"
    assert "failed" in response.message
    _find(directory, "jdoe")


def test_duplicate_user_propagates_directory_error(service, high_caller):
    with pytest.raises(DirectoryOperationFailed):
        service.create_user(
            high_caller, _create_request(sam_account_name="jsmith", optional_groups=[], create_admin_account=False)
        )


def test_unmanaged_domain_is_rejected(service, high_caller):
    with pytest.raises(ValueError):
        service.create_user(high_caller, _create_request(domain="other.example"))


# Queries ----------------------------------------------------------------------
def test_list_users_sorted_with_admin_flags(service, general_caller):
    items = service.list_users(general_caller, "corp.local")

    assert [item.sam_account_name for item in items] == ["adoe", "bjones", "cwhite", "jsmith"]
    flags = {item.sam_account_name: item.has_admin_account for item in items}
    assert flags == {"adoe": False, "bjones": True, "cwhite": True, "jsmith": False}


def test_list_users_filters(service, general_caller):
    assert [i.sam_account_name for i in service.list_users(general_caller, "corp.local", "smith")] == ["jsmith"]
    assert [
        i.sam_account_name for i in service.list_users(general_caller, "corp.local", status_filter="disabled")
    ] == ["adoe"]
    assert [
        i.sam_account_name for i in service.list_users(general_caller, "corp.local", has_admin_account=True)
    ] == ["bjones", "cwhite"]


def test_list_users_only_searches_bases_of_the_domain(service, general_caller):
    assert [i.sam_account_name for i in service.list_users(general_caller, "emea.corp.local")] == ["mmuller"]


def test_list_users_without_search_base_returns_empty(config_data, factory, general_caller, caplog):
    config_data["provisioning"]["search_base_ous"] = ["OU=Users,DC=corp,DC=local"]
    service = AccountService(config_from_dict(config_data), factory)

    with caplog.at_level(logging.WARNING, logger="keystone.provisioning"):
        assert service.list_users(general_caller, "emea.corp.local") == []
    assert caplog.records


def test_list_users_rejects_unknown_status(service, general_caller):
    with pytest.raises(ValueError):
        service.list_users(general_caller, "corp.local", status_filter="archived")


def test_user_details(service, general_caller, high_caller):
    detail = service.get_user_details(general_caller, "corp.local", "bjones")

    assert detail.display_name == "Bob Jones"
    assert detail.locked_out
    assert detail.has_admin_account
    assert not detail.can_auto_reset_password
    assert service.get_user_details(high_caller, "corp.local", "bjones").can_auto_reset_password


def test_user_details_missing_user(service, general_caller):
    with pytest.raises(NotFound):
        service.get_user_details(general_caller, "corp.local", "nobody")


def test_settings_depend_on_classification(service, high_caller, general_caller, denied_caller):
    assert service.get_settings(high_caller)["optionalGroupsHighPrivilege"] == ["FinanceAdmins"]
    general = service.get_settings(general_caller)
    assert general["optionalGroupsGeneral"] == ["Finance"]
    assert general["optionalGroupsHighPrivilege"] == []
    denied = service.get_settings(denied_caller)
    assert denied["domains"] == ["corp.local", "emea.corp.local"]
    assert denied["optionalGroupsGeneral"] == []


def test_describe_caller(service, high_caller, denied_caller):
    me = service.describe_caller(high_caller)
    assert me == {"name": "ida.admin", "isHighPrivilege": True, "canCreateUsers": True, "groups": ["IdentityAdmins"]}

    with pytest.raises(PermissionDenied):
        service.describe_caller(denied_caller)


# Updates ----------------------------------------------------------------------
def _update_request(**overrides):
    values = dict(
        domain="corp.local",
        sam_account_name="jsmith",
        first_name="Johnny",
        last_name="Smith",
        optional_groups=["FinanceAdmins"],
        manage_admin_account=False,
    )
    values.update(overrides)
    return UpdateUserRequest(**values)


def test_update_is_visible_in_details(service, high_caller):
    expires = datetime(2030, 6, 30, tzinfo=timezone.utc)
    outcome = service.update_user(high_caller, _update_request(account_expiration_date=expires))

    detail = service.get_user_details(high_caller, "corp.local", "jsmith")
    assert outcome.succeeded
    assert detail.first_name == "Johnny"
    assert detail.display_name == "Johnny Smith"
    assert detail.account_expiration_date == expires
    assert "FinanceAdmins" in detail.member_of
    assert "Finance" not in detail.member_of
    assert "EMEA-Auditors" in detail.member_of


def test_update_requires_high_privilege(service, general_caller):
    with pytest.raises(PermissionDenied):
        service.update_user(general_caller, _update_request())


def test_update_missing_user(service, high_caller):
    with pytest.raises(NotFound):
        service.update_user(high_caller, _update_request(sam_account_name="nobody"))


def test_update_without_group_list_removes_managed_groups(service, high_caller, directory):
    service.update_user(high_caller, _update_request(optional_groups=None))

    dn, _ = _find(directory, "jsmith")
    assert not directory.is_member(FINANCE_DN, dn)


def test_update_twice_converges(service, high_caller):
    service.update_user(high_caller, _update_request())
    outcome = service.update_user(high_caller, _update_request())

    assert outcome.status_of("update_attributes") == "skipped"
    assert not [step for step in outcome.steps if step.step.startswith("group:")]


def test_update_creates_missing_admin_account(service, high_caller, directory):
    outcome = service.update_user(high_caller, _update_request(manage_admin_account=True))

    assert outcome.status_of("create_admin_account") == "ok"
    admin_dn, _ = _find(directory, "jsmith-a")
    assert directory.is_member(FINANCE_ADMINS_DN, admin_dn)


def test_update_disables_admin_account_by_default(service, high_caller, directory):
    outcome = service.update_user(
        high_caller, _update_request(sam_account_name="bjones", first_name="Bob", last_name="Jones")
    )

    assert outcome.status_of("retire_admin_account") == "ok"
    _, admin = _find(directory, "bjones-a")
    assert admin["userAccountControl"] & 2


def test_update_can_delete_admin_account(config_data, factory, high_caller, directory):
    config_data["provisioning"]["admin_account_retirement"] = "delete"
    service = AccountService(config_from_dict(config_data), factory)

    service.update_user(
        high_caller, _update_request(sam_account_name="bjones", first_name="Bob", last_name="Jones")
    )

    assert directory.find("users", "corp.local", None, IdentityType.DISTINGUISHED_NAME, BJONES_ADMIN_DN) is None


# Credentials and state --------------------------------------------------------
def test_reset_password_expires_and_unlocks(service, general_caller, directory):
    password = service.reset_password(general_caller, UserActionRequest("corp.local", "bjones"))

    _, attributes = _find(directory, "bjones")
    assert attributes["unicodePwd"] == password
    assert attributes["pwdLastSet"] == 0
    assert attributes["lockoutTime"] == 0


def test_reset_password_missing_user(service, general_caller):
    with pytest.raises(NotFound):
        service.reset_password(general_caller, UserActionRequest("corp.local", "nobody"))


def test_reset_admin_password(service, high_caller, directory):
    password = service.reset_admin_password(high_caller, ResetAdminPasswordRequest("corp.local", "bjones"))

    _, attributes = _find(directory, "bjones-a")
    assert attributes["unicodePwd"] == password
    assert attributes["pwdLastSet"] != 0


def test_reset_admin_password_outside_admin_ou_is_not_found(service, high_caller):
    with pytest.raises(NotFound):
        service.reset_admin_password(high_caller, ResetAdminPasswordRequest("corp.local", "cwhite"))


def test_reset_admin_password_requires_high_privilege(service, general_caller):
    with pytest.raises(PermissionDenied):
        service.reset_admin_password(general_caller, ResetAdminPasswordRequest("corp.local", "bjones"))


def test_disable_on_disabled_account_writes_nothing(service, general_caller, directory, monkeypatch):
    writes = []
    monkeypatch.setattr(directory, "modify_user", lambda dn, changes: writes.append((dn, changes)))

    assert service.disable(general_caller, UserActionRequest("corp.local", "adoe")) is False
    assert writes == []


def test_state_changes(service, general_caller, directory):
    assert service.enable(general_caller, UserActionRequest("corp.local", "adoe")) is True
    assert service.unlock(general_caller, UserActionRequest("corp.local", "bjones")) is True
    assert service.unlock(general_caller, UserActionRequest("corp.local", "jsmith")) is False
    assert service.disable(general_caller, UserActionRequest("corp.local", "jsmith")) is True

    assert _find(directory, "adoe")[1]["userAccountControl"] == 512
    assert _find(directory, "bjones")[1]["lockoutTime"] == 0
    assert _find(directory, "jsmith")[1]["userAccountControl"] == 514


def test_state_change_missing_user(service, general_caller):
    with pytest.raises(NotFound):
        service.enable(general_caller, UserActionRequest("corp.local", "nobody"))
