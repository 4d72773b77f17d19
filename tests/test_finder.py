from types import SimpleNamespace

import pytest

from conftest import (
    EMEA_AUDITORS_DN,
    FINANCE_DN,
    JSMITH_DN,
    guid_for,
)
from keystone.finder import PrincipalFinder
from keystone.models import IdentityType


@pytest.mark.parametrize(
    "reference",
    [
        FINANCE_DN,
        "S-1-5-21-1000-2000-3000-1101",
        guid_for(FINANCE_DN),
        "{" + guid_for(FINANCE_DN).upper() + "}",
        "finance",
    ],
)
def test_resolve_group_accepts_every_reference_form(factory, finder, reference):
    with factory.open("corp.local") as session:
        group = finder.resolve_group(session, reference)

    assert group is not None
    assert group.distinguished_name == FINANCE_DN


def test_resolve_group_falls_back_to_display_name(factory, finder):
    with factory.open("corp.local") as session:
        group = finder.resolve_group(session, "Payroll Team")

    assert group.sam_account_name == "PayrollTeam"


def test_resolve_group_uses_global_catalog_for_other_domains(factory, finder):
    with factory.open("corp.local") as session:
        group = finder.resolve_group(session, "EMEA-Auditors")

    assert group.distinguished_name == EMEA_AUDITORS_DN
    assert group.domain == "emea.corp.local"


def test_resolve_group_without_catalog_hit_returns_none(factory):
    finder = PrincipalFinder(factory, SimpleNamespace(lookup=lambda name: None))
    with factory.open("corp.local") as session:
        assert finder.resolve_group(session, "EMEA-Auditors") is None
        assert finder.resolve_group(session, "   ") is None


def test_dn_lookup_outside_bound_container_misses(factory, finder):
    with factory.open("corp.local", "OU=Admins,DC=corp,DC=local") as session:
        assert finder.find_user(session, IdentityType.DISTINGUISHED_NAME, JSMITH_DN) is None
        assert finder.find_user(session, IdentityType.SAM_ACCOUNT_NAME, "jsmith") is None
        assert finder.find_user(session, IdentityType.SAM_ACCOUNT_NAME, "bjones-a") is not None


def test_groups_of_includes_remote_and_primary_groups(factory, finder):
    with factory.open("corp.local") as session:
        user = finder.find_user(session, IdentityType.SAM_ACCOUNT_NAME, "jsmith")
        labels = {group.label for group in finder.groups_of(session, user)}

    assert labels == {"Finance", "EMEA-Auditors", "Domain Users"}


def test_groups_of_skips_unreachable_domains(factory, finder, directory):
    with factory.open("corp.local") as session:
        user = finder.find_user(session, IdentityType.SAM_ACCOUNT_NAME, "jsmith")
        directory.set_offline("emea.corp.local")
        labels = {group.label for group in finder.groups_of(session, user)}

    assert labels == {"Finance", "Domain Users"}


def test_session_for_reuses_or_opens_sessions(factory, finder):
    with factory.open("corp.local") as session:
        local = finder.find_group(session, IdentityType.DISTINGUISHED_NAME, FINANCE_DN)
        with finder.session_for(session, local) as same:
            assert same is session

        with factory.open("emea.corp.local") as emea:
            remote = finder.find_group(emea, IdentityType.DISTINGUISHED_NAME, EMEA_AUDITORS_DN)
        with finder.session_for(session, remote) as other:
            assert other is not session
            assert other.domain == "emea.corp.local"
