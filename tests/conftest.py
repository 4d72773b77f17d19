"""Shared fixtures: a two-domain forest held in an in-memory directory."""
import copy
import random
import uuid

import pytest

from keystone.config import config_from_dict
from keystone.directory import GlobalCatalog, SessionFactory
from keystone.finder import PrincipalFinder
from keystone.mock_directory import MockDirectory
from keystone.models import Caller
from keystone.passwords import PasswordGenerator
from keystone.provisioning import AccountService

CORP_SID = "S-1-5-21-1000-2000-3000"
EMEA_SID = "S-1-5-21-4000-5000-6000"
CORP_DC = "DC=corp,DC=local"
EMEA_DC = "DC=emea,DC=corp,DC=local"

# groupType as AD returns it (signed 32-bit).
GLOBAL_SECURITY = -2147483646
DOMAIN_LOCAL_SECURITY = -2147483644
UNIVERSAL_DISTRIBUTION = 8

DOMAIN_USERS_DN = f"CN=Domain Users,CN=Users,{CORP_DC}"
FINANCE_DN = f"CN=Finance,OU=Groups,{CORP_DC}"
FINANCE_ADMINS_DN = f"CN=FinanceAdmins,OU=Groups,{CORP_DC}"
TIER1_DN = f"CN=Tier1Admins,OU=Groups,{CORP_DC}"
EMEA_AUDITORS_DN = f"CN=EMEA-Auditors,OU=Groups,{EMEA_DC}"

JSMITH_DN = f"CN=John Smith,OU=Users,{CORP_DC}"
ADOE_DN = f"CN=Alice Doe,OU=Users,{CORP_DC}"
BJONES_DN = f"CN=Bob Jones,OU=Users,{CORP_DC}"
BJONES_ADMIN_DN = f"CN=admin-bobjones,OU=Admins,{CORP_DC}"
CWHITE_DN = f"CN=Carol White,OU=Users,{CORP_DC}"
CWHITE_ADMIN_DN = f"CN=admin-carolwhite,OU=Service,{CORP_DC}"
MMULLER_DN = f"CN=Max Muller,OU=Users,{EMEA_DC}"

IDENTITY_ADMINS_SID = f"{CORP_SID}-1104"
HELPDESK_SID = f"{CORP_SID}-1105"
EMEA_AUDITORS_SID = f"{EMEA_SID}-1101"
UNKNOWN_SID = "S-1-5-21-9-9-9-4242"


def guid_for(distinguished_name):
    return str(uuid.uuid5(uuid.NAMESPACE_URL, distinguished_name.lower()))


def _group(dn, sam, sid, group_type=GLOBAL_SECURITY, members=()):
    return {
        "distinguished_name": dn,
        "attributes": {
            "sAMAccountName": sam,
            "name": dn.split(",", 1)[0][3:],
            "objectSid": sid,
            "objectGUID": guid_for(dn),
            "groupType": group_type,
            "member": list(members),
        },
    }


def _user(dn, sam, sid, given, surname, domain="corp.local", uac=512, lockout=0):
    return {
        "distinguished_name": dn,
        "attributes": {
            "sAMAccountName": sam,
            "objectSid": sid,
            "objectGUID": guid_for(dn),
            "givenName": given,
            "sn": surname,
            "displayName": f"{given} {surname}",
            "userPrincipalName": f"{sam}@{domain}",
            "mail": f"{given}.{surname}@{domain}".lower(),
            "userAccountControl": uac,
            "lockoutTime": lockout,
            "accountExpires": 0,
            "primaryGroupID": 513,
        },
    }


DIRECTORY_DATA = {
    "domains": {
        "corp.local": {"sid": CORP_SID},
        "emea.corp.local": {"sid": EMEA_SID},
    },
    "groups": [
        _group(DOMAIN_USERS_DN, "Domain Users", f"{CORP_SID}-513"),
        _group(FINANCE_DN, "Finance", f"{CORP_SID}-1101", members=[JSMITH_DN]),
        _group(FINANCE_ADMINS_DN, "FinanceAdmins", f"{CORP_SID}-1102", members=[BJONES_ADMIN_DN]),
        _group(TIER1_DN, "Tier1Admins", f"{CORP_SID}-1103"),
        _group(f"CN=IdentityAdmins,OU=Groups,{CORP_DC}", "IdentityAdmins", IDENTITY_ADMINS_SID),
        _group(f"CN=Helpdesk,OU=Groups,{CORP_DC}", "Helpdesk", HELPDESK_SID),
        _group(f"CN=AllStaff,OU=Groups,{CORP_DC}", "AllStaff", f"{CORP_SID}-1106", UNIVERSAL_DISTRIBUTION),
        _group(f"CN=Payroll Team,OU=Groups,{CORP_DC}", "PayrollTeam", f"{CORP_SID}-1107"),
        _group(f"CN=Domain Users,CN=Users,{EMEA_DC}", "Domain Users", f"{EMEA_SID}-513"),
        _group(EMEA_AUDITORS_DN, "EMEA-Auditors", EMEA_AUDITORS_SID, DOMAIN_LOCAL_SECURITY, [JSMITH_DN]),
    ],
    "users": [
        _user(JSMITH_DN, "jsmith", f"{CORP_SID}-1200", "John", "Smith"),
        _user(ADOE_DN, "adoe", f"{CORP_SID}-1201", "Alice", "Doe", uac=514),
        _user(BJONES_DN, "bjones", f"{CORP_SID}-1202", "Bob", "Jones", lockout=133000000000000000),
        _user(BJONES_ADMIN_DN, "bjones-a", f"{CORP_SID}-1203", "Bob", "Jones"),
        _user(CWHITE_DN, "cwhite", f"{CORP_SID}-1205", "Carol", "White"),
        _user(CWHITE_ADMIN_DN, "cwhite-a", f"{CORP_SID}-1206", "Carol", "White"),
        _user(MMULLER_DN, "mmuller", f"{EMEA_SID}-1200", "Max", "Muller", domain="emea.corp.local"),
    ],
}

CONFIG_DATA = {
    "forest_root_domain": "corp.local",
    "domains": ["corp.local", "emea.corp.local"],
    "ldap": {"server_uri": "mock://", "user_dn": "svc-keystone@corp.local", "password": "secret"},
    "access_control": {
        "general_access_groups": ["Helpdesk"],
        "high_privilege_groups": ["IdentityAdmins"],
    },
    "provisioning": {
        "search_base_ous": [f"OU=Users,{CORP_DC}", f"OU=Users,{EMEA_DC}"],
        "optional_groups_general": ["Finance"],
        "optional_groups_high_privilege": ["FinanceAdmins"],
        "admin_group": "Tier1Admins",
    },
}


@pytest.fixture
def config_data():
    return copy.deepcopy(CONFIG_DATA)


@pytest.fixture
def config(config_data):
    return config_from_dict(config_data)


@pytest.fixture
def directory():
    return MockDirectory(data=DIRECTORY_DATA)


@pytest.fixture
def factory(config, directory):
    return SessionFactory(config, mock_directory=directory)


@pytest.fixture
def finder(config, factory, directory):
    return PrincipalFinder(factory, GlobalCatalog(config, directory))


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def service(config, factory, sleeps):
    return AccountService(
        config,
        factory,
        password_generator=PasswordGenerator(random.Random(1234)),
        sleep=sleeps.append,
    )


@pytest.fixture
def high_caller():
    return Caller.from_claims("ida.admin", [IDENTITY_ADMINS_SID])


@pytest.fixture
def general_caller():
    return Caller.from_claims("harry.helpdesk", [HELPDESK_SID])


@pytest.fixture
def denied_caller():
    return Caller.from_claims("eve", [UNKNOWN_SID])
