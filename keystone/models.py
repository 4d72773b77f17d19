"""Data models for directory principals, caller identities and API payloads."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from .dn import (
    datetime_to_filetime,
    domain_from_dn,
    filetime_to_datetime,
    format_guid,
    format_sid,
    normalize_names,
    parse_datetime,
    rid_from_sid,
)

UAC_ACCOUNTDISABLE = 0x0002
UAC_NORMAL_ACCOUNT = 0x0200

GROUP_TYPE_GLOBAL = 0x00000002
GROUP_TYPE_DOMAIN_LOCAL = 0x00000004
GROUP_TYPE_UNIVERSAL = 0x00000008
GROUP_TYPE_SECURITY = 0x80000000


class IdentityType(str, enum.Enum):
    """Attribute used to locate a principal, in the order loose references are tried."""

    DISTINGUISHED_NAME = "distinguishedName"
    SID = "objectSid"
    GUID = "objectGUID"
    SAM_ACCOUNT_NAME = "sAMAccountName"
    NAME = "name"


class PrivilegeClassification(str, enum.Enum):
    HIGH_PRIVILEGE = "HighPrivilege"
    GENERAL_ACCESS = "GeneralAccess"
    DENIED = "Denied"


@dataclass(frozen=True)
class Caller:
    """Authenticated caller as seen by the core: a name plus raw group SID claims."""

    name: str
    group_sids: FrozenSet[str] = frozenset()

    @classmethod
    def from_claims(cls, name: Optional[str], sids: Iterable[str]) -> "Caller":
        cleaned = frozenset(str(sid).strip() for sid in sids if str(sid or "").strip())
        return cls(name=(name or "unknown").strip() or "unknown", group_sids=cleaned)


def _first(attributes: Dict[str, Any], key: str) -> Any:
    value = attributes.get(key)
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def _text(attributes: Dict[str, Any], key: str) -> Optional[str]:
    value = _first(attributes, key)
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    text = str(value).strip()
    return text or None


def _integer(attributes: Dict[str, Any], key: str, default: Optional[int] = None) -> Optional[int]:
    value = _first(attributes, key)
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        converted = filetime_to_datetime(value)
        return datetime_to_filetime(converted) if converted else 0
    return int(value)


def _values(attributes: Dict[str, Any], key: str) -> List[str]:
    value = attributes.get(key)
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if item]
    return [str(value)]


@dataclass
class UserPrincipal:
    """Snapshot of a user entry. Changes are written back with ``DirectorySession.save_user``."""

    distinguished_name: str
    sam_account_name: str
    sid: Optional[str] = None
    guid: Optional[str] = None
    given_name: Optional[str] = None
    surname: Optional[str] = None
    display_name: Optional[str] = None
    user_principal_name: Optional[str] = None
    email: Optional[str] = None
    user_account_control: int = UAC_NORMAL_ACCOUNT | UAC_ACCOUNTDISABLE
    lockout_time: int = 0
    account_expires: Optional[datetime] = None
    primary_group_id: Optional[int] = None
    member_of: List[str] = field(default_factory=list)
    _loaded: Dict[str, Any] = field(default_factory=dict, init=False, repr=False, compare=False)

    @classmethod
    def from_attributes(cls, distinguished_name: str, attributes: Dict[str, Any]) -> "UserPrincipal":
        user = cls(
            distinguished_name=distinguished_name,
            sam_account_name=_text(attributes, "sAMAccountName") or "",
            sid=format_sid(_first(attributes, "objectSid")),
            guid=format_guid(_first(attributes, "objectGUID")),
            given_name=_text(attributes, "givenName"),
            surname=_text(attributes, "sn"),
            display_name=_text(attributes, "displayName"),
            user_principal_name=_text(attributes, "userPrincipalName"),
            email=_text(attributes, "mail"),
            user_account_control=_integer(attributes, "userAccountControl", UAC_NORMAL_ACCOUNT),
            lockout_time=_integer(attributes, "lockoutTime", 0),
            account_expires=filetime_to_datetime(_first(attributes, "accountExpires")),
            primary_group_id=_integer(attributes, "primaryGroupID"),
            member_of=_values(attributes, "memberOf"),
        )
        user.mark_clean()
        return user

    @property
    def domain(self) -> str:
        return domain_from_dn(self.distinguished_name)

    @property
    def enabled(self) -> bool:
        return not self.user_account_control & UAC_ACCOUNTDISABLE

    @enabled.setter
    def enabled(self, value: bool) -> None:
        if value:
            self.user_account_control &= ~UAC_ACCOUNTDISABLE
        else:
            self.user_account_control |= UAC_ACCOUNTDISABLE

    @property
    def locked_out(self) -> bool:
        return self.lockout_time > 0

    def unlock(self) -> None:
        self.lockout_time = 0

    def editable_attributes(self) -> Dict[str, Any]:
        return {
            "givenName": self.given_name,
            "sn": self.surname,
            "displayName": self.display_name,
            "userPrincipalName": self.user_principal_name,
            "mail": self.email,
            "userAccountControl": self.user_account_control,
            "lockoutTime": self.lockout_time,
            "accountExpires": self.account_expires,
        }

    def new_entry_attributes(self) -> Dict[str, Any]:
        attributes = {"sAMAccountName": self.sam_account_name, **self.editable_attributes()}
        attributes.pop("lockoutTime")
        return {key: value for key, value in attributes.items() if value is not None}

    def changes(self) -> Dict[str, Any]:
        """Attributes whose value differs from the snapshot the principal was loaded with."""

        marker = object()
        return {
            key: value
            for key, value in self.editable_attributes().items()
            if self._loaded.get(key, marker) != value
        }

    def mark_clean(self) -> None:
        self._loaded = self.editable_attributes()


@dataclass
class GroupPrincipal:
    distinguished_name: str
    sam_account_name: str
    sid: Optional[str] = None
    guid: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    group_type: int = GROUP_TYPE_GLOBAL | GROUP_TYPE_SECURITY

    @classmethod
    def from_attributes(cls, distinguished_name: str, attributes: Dict[str, Any]) -> "GroupPrincipal":
        return cls(
            distinguished_name=distinguished_name,
            sam_account_name=_text(attributes, "sAMAccountName") or _text(attributes, "cn") or "",
            sid=format_sid(_first(attributes, "objectSid")),
            guid=format_guid(_first(attributes, "objectGUID")),
            name=_text(attributes, "name") or _text(attributes, "cn"),
            description=_text(attributes, "description"),
            group_type=_integer(attributes, "groupType", GROUP_TYPE_GLOBAL | GROUP_TYPE_SECURITY),
        )

    @property
    def domain(self) -> str:
        return domain_from_dn(self.distinguished_name)

    @property
    def is_security_group(self) -> bool:
        return bool(self.group_type & GROUP_TYPE_SECURITY)

    @property
    def scope(self) -> str:
        if self.group_type & GROUP_TYPE_GLOBAL:
            return "global"
        if self.group_type & GROUP_TYPE_DOMAIN_LOCAL:
            return "domain_local"
        if self.group_type & GROUP_TYPE_UNIVERSAL:
            return "universal"
        return "unknown"

    @property
    def rid(self) -> Optional[int]:
        return rid_from_sid(self.sid) if self.sid else None

    @property
    def label(self) -> str:
        return self.sam_account_name or self.name or self.distinguished_name


# Provisioning outcome -----------------------------------------------------
@dataclass
class StepResult:
    step: str
    status: str  # ok, failed, skipped
    detail: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "status": self.status, "detail": self.detail}


@dataclass
class ProvisioningOutcome:
    """Ordered log of best-effort provisioning steps and how each one ended."""

    steps: List[StepResult] = field(default_factory=list)

    def ok(self, step: str, detail: Optional[str] = None) -> None:
        self.steps.append(StepResult(step, "ok", detail))

    def failed(self, step: str, detail: Optional[str] = None) -> None:
        self.steps.append(StepResult(step, "failed", detail))

    def skipped(self, step: str, detail: Optional[str] = None) -> None:
        self.steps.append(StepResult(step, "skipped", detail))

    def extend(self, other: "ProvisioningOutcome") -> None:
        self.steps.extend(other.steps)

    @property
    def failures(self) -> List[StepResult]:
        return [step for step in self.steps if step.status == "failed"]

    @property
    def succeeded(self) -> bool:
        return not self.failures

    def status_of(self, step: str) -> Optional[str]:
        for result in reversed(self.steps):
            if result.step == step:
                return result.status
        return None

    def to_dict(self) -> List[Dict[str, Any]]:
        return [step.to_dict() for step in self.steps]


# Requests -----------------------------------------------------------------
def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _required(data: Dict[str, Any], label: str, *keys: str) -> str:
    value = str(_pick(data, *keys) or "").strip()
    if not value:
        raise ValueError(f"'{label}' is required.")
    return value


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _date(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return filetime_to_datetime(value)
    parsed = parse_datetime(str(value))
    if parsed is None:
        raise ValueError(f"Invalid date value '{value}'.")
    return parsed


def _group_list(value: Any) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    return normalize_names(value)


@dataclass
class UserActionRequest:
    domain: str
    sam_account_name: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserActionRequest":
        return cls(
            domain=_required(data, "domain", "domain"),
            sam_account_name=_required(data, "samAccountName", "samAccountName", "sam_account_name"),
        )


@dataclass
class ResetAdminPasswordRequest(UserActionRequest):
    """Targets the ``-a`` account paired with ``sam_account_name``."""


@dataclass
class CreateUserRequest:
    domain: str
    first_name: str
    last_name: str
    sam_account_name: str
    optional_groups: List[str] = field(default_factory=list)
    create_admin_account: bool = False
    account_expiration_date: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateUserRequest":
        return cls(
            domain=_required(data, "domain", "domain"),
            first_name=_required(data, "firstName", "firstName", "first_name"),
            last_name=_required(data, "lastName", "lastName", "last_name"),
            sam_account_name=_required(data, "samAccountName", "samAccountName", "sam_account_name"),
            optional_groups=_group_list(_pick(data, "optionalGroups", "optional_groups")) or [],
            create_admin_account=_flag(_pick(data, "createAdminAccount", "create_admin_account")),
            account_expiration_date=_date(
                _pick(data, "accountExpirationDate", "account_expiration_date")
            ),
        )

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class UpdateUserRequest:
    domain: str
    sam_account_name: str
    first_name: str
    last_name: str
    optional_groups: Optional[List[str]] = None
    manage_admin_account: bool = False
    account_expiration_date: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateUserRequest":
        return cls(
            domain=_required(data, "domain", "domain"),
            sam_account_name=_required(data, "samAccountName", "samAccountName", "sam_account_name"),
            first_name=_required(data, "firstName", "firstName", "first_name"),
            last_name=_required(data, "lastName", "lastName", "last_name"),
            optional_groups=_group_list(_pick(data, "optionalGroups", "optional_groups")),
            manage_admin_account=_flag(_pick(data, "manageAdminAccount", "manage_admin_account")),
            account_expiration_date=_date(
                _pick(data, "accountExpirationDate", "account_expiration_date")
            ),
        )


# Results ------------------------------------------------------------------
def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class UserAccountDetails:
    sam_account_name: str
    display_name: str
    user_principal_name: str
    initial_password: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "samAccountName": self.sam_account_name,
            "displayName": self.display_name,
            "userPrincipalName": self.user_principal_name,
            "initialPassword": self.initial_password,
        }


@dataclass
class AdminAccountDetails(UserAccountDetails):
    outcome: ProvisioningOutcome = field(default_factory=ProvisioningOutcome)

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["steps"] = self.outcome.to_dict()
        return payload


@dataclass
class CreateUserResponse:
    message: str
    user_account: Optional[UserAccountDetails] = None
    admin_account: Optional[AdminAccountDetails] = None
    groups_associated: List[str] = field(default_factory=list)
    outcome: ProvisioningOutcome = field(default_factory=ProvisioningOutcome)

    @property
    def initial_password(self) -> Optional[str]:
        return self.user_account.initial_password if self.user_account else None

    @property
    def admin_initial_password(self) -> Optional[str]:
        return self.admin_account.initial_password if self.admin_account else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "userAccount": self.user_account.to_dict() if self.user_account else None,
            "adminAccount": self.admin_account.to_dict() if self.admin_account else None,
            "groupsAssociated": list(self.groups_associated),
            "steps": self.outcome.to_dict(),
        }


@dataclass
class UserListItem:
    display_name: Optional[str]
    sam_account_name: str
    email_address: Optional[str]
    enabled: bool
    has_admin_account: bool
    account_expiration_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "samAccountName": self.sam_account_name,
            "emailAddress": self.email_address,
            "enabled": self.enabled,
            "hasAdminAccount": self.has_admin_account,
            "accountExpirationDate": _iso(self.account_expiration_date),
        }


@dataclass
class UserDetail:
    display_name: str
    sam_account_name: str
    first_name: Optional[str]
    last_name: Optional[str]
    enabled: bool
    locked_out: bool
    has_admin_account: bool
    member_of: List[str] = field(default_factory=list)
    account_expiration_date: Optional[datetime] = None
    can_auto_reset_password: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "displayName": self.display_name,
            "samAccountName": self.sam_account_name,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "enabled": self.enabled,
            "lockedOut": self.locked_out,
            "hasAdminAccount": self.has_admin_account,
            "memberOf": list(self.member_of),
            "accountExpirationDate": _iso(self.account_expiration_date),
            "canAutoResetPassword": self.can_auto_reset_password,
        }


__all__ = [
    "AdminAccountDetails",
    "Caller",
    "CreateUserRequest",
    "CreateUserResponse",
    "GROUP_TYPE_DOMAIN_LOCAL",
    "GROUP_TYPE_GLOBAL",
    "GROUP_TYPE_SECURITY",
    "GROUP_TYPE_UNIVERSAL",
    "GroupPrincipal",
    "IdentityType",
    "PrivilegeClassification",
    "ProvisioningOutcome",
    "ResetAdminPasswordRequest",
    "StepResult",
    "UAC_ACCOUNTDISABLE",
    "UAC_NORMAL_ACCOUNT",
    "UpdateUserRequest",
    "UserAccountDetails",
    "UserActionRequest",
    "UserDetail",
    "UserListItem",
    "UserPrincipal",
]
