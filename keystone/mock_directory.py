"""In-process Active Directory emulator used for ``mock://`` server URIs and tests."""
from __future__ import annotations

import copy
import threading
import uuid
import zlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from .dn import (
    dn_within,
    domain_from_dn,
    domain_sid,
    format_guid,
    parse_guid,
    rid_from_sid,
    same_dn,
)
from .errors import ENTRY_ALREADY_EXISTS, DirectoryOperationFailed, StaleObjectError
from .models import UAC_ACCOUNTDISABLE, UAC_NORMAL_ACCOUNT, IdentityType

CONSTRAINT_VIOLATION = 19
DOMAIN_USERS_RID = 513
_FIRST_RID = 1100

Record = Tuple[str, Dict[str, Any]]


def _common_name(distinguished_name: str) -> str:
    first = distinguished_name.split(",", 1)[0]
    return first.split("=", 1)[1] if "=" in first else first


class MockDirectory:
    """Lightweight forest emulator used when no domain controller is available.

    Entries live in ``users`` and ``groups`` lists of ``{distinguished_name, attributes}``
    records. The emulator follows the AD rules the provisioning engine depends on: the
    primary group is an implicit membership, a principal's primary group must be one of
    its explicit groups, and a principal cannot be removed from its primary group.
    """

    def __init__(self, data_file: Optional[Path] = None, data: Optional[Dict[str, Any]] = None):
        self.data_file = data_file
        self._lock = threading.RLock()
        self._data: Dict[str, Any] = {
            "domains": {},
            "users": [],
            "groups": [],
        }
        self._load(data)

    def _load(self, data: Optional[Dict[str, Any]]) -> None:
        if data is not None:
            self._data = copy.deepcopy(data)
        elif self.data_file and self.data_file.exists():
            with self.data_file.open("r", encoding="utf-8") as handle:
                self._data = yaml.safe_load(handle) or self._data
        self._data.setdefault("domains", {})
        self._data.setdefault("users", [])
        self._data.setdefault("groups", [])
        for group in self._data["groups"]:
            group.setdefault("attributes", {}).setdefault("member", [])

    def _save(self) -> None:
        if not self.data_file:
            return
        self.data_file.parent.mkdir(parents=True, exist_ok=True)
        with self.data_file.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(self._data, handle, sort_keys=False, indent=2)

    # Domains --------------------------------------------------------------
    def _domain_settings(self, domain: str) -> Dict[str, Any]:
        for name, settings in self._data.get("domains", {}).items():
            if name.lower() == domain.lower():
                return settings or {}
        return {}

    def knows_domain(self, domain: str) -> bool:
        if self._domain_settings(domain) or any(
            name.lower() == domain.lower() for name in self._data.get("domains", {})
        ):
            return True
        return any(
            domain_from_dn(entry["distinguished_name"]).lower() == domain.lower()
            for entry in self._all_entries()
        )

    def is_online(self, domain: str) -> bool:
        return self.knows_domain(domain) and not self._domain_settings(domain).get("offline", False)

    def set_offline(self, domain: str, offline: bool = True) -> None:
        with self._lock:
            domains = self._data.setdefault("domains", {})
            key = next((name for name in domains if name.lower() == domain.lower()), domain)
            settings = domains.get(key) or {}
            settings["offline"] = offline
            domains[key] = settings

    def domain_sid(self, domain: str) -> str:
        configured = self._domain_settings(domain).get("sid")
        if configured:
            return str(configured)
        for entry in self._all_entries():
            sid = entry.get("attributes", {}).get("objectSid")
            if sid and domain_from_dn(entry["distinguished_name"]).lower() == domain.lower():
                return domain_sid(str(sid))
        return f"S-1-5-21-{zlib.crc32(domain.lower().encode('utf-8'))}"

    def _next_rid(self, domain: str) -> int:
        prefix = self.domain_sid(domain) + "-"
        rids = [
            rid_from_sid(str(entry["attributes"]["objectSid"]))
            for entry in self._all_entries()
            if str(entry.get("attributes", {}).get("objectSid", "")).startswith(prefix)
        ]
        return max([_FIRST_RID - 1, *rids]) + 1

    # Lookup ---------------------------------------------------------------
    def _all_entries(self) -> Iterable[Dict[str, Any]]:
        yield from self._data.get("users", [])
        yield from self._data.get("groups", [])

    def _entry(self, kind: str, distinguished_name: str) -> Optional[Dict[str, Any]]:
        for entry in self._data.get(kind, []):
            if same_dn(entry.get("distinguished_name"), distinguished_name):
                return entry
        return None

    def _require(self, kind: str, distinguished_name: str) -> Dict[str, Any]:
        entry = self._entry(kind, distinguished_name)
        if entry is None:
            raise StaleObjectError(
                f"Object '{distinguished_name}' does not exist.", "noSuchObject", 32
            )
        return entry

    @staticmethod
    def _matches(entry: Dict[str, Any], identity_type: IdentityType, value: str) -> bool:
        dn = entry.get("distinguished_name", "")
        attrs = entry.get("attributes", {})
        lowered = value.strip().lower()
        if identity_type is IdentityType.DISTINGUISHED_NAME:
            return same_dn(dn, value)
        if identity_type is IdentityType.SID:
            return str(attrs.get("objectSid", "")).lower() == lowered
        if identity_type is IdentityType.GUID:
            wanted = parse_guid(value)
            return bool(wanted) and format_guid(attrs.get("objectGUID")) == wanted
        if identity_type is IdentityType.SAM_ACCOUNT_NAME:
            return str(attrs.get("sAMAccountName", "")).lower() == lowered
        names = {_common_name(dn), attrs.get("name"), attrs.get("displayName")}
        return lowered in {str(name).lower() for name in names if name}

    def _record(self, kind: str, entry: Dict[str, Any]) -> Record:
        attributes = copy.deepcopy(entry.get("attributes", {}))
        dn = entry["distinguished_name"]
        if kind == "users":
            attributes["memberOf"] = [
                group["distinguished_name"]
                for group in self._data.get("groups", [])
                if any(same_dn(member, dn) for member in group["attributes"].get("member", []))
            ]
        return dn, attributes

    def find(
        self,
        kind: str,
        domain: str,
        container: Optional[str],
        identity_type: IdentityType,
        value: str,
    ) -> Optional[Record]:
        with self._lock:
            for entry in self._data.get(kind, []):
                dn = entry.get("distinguished_name", "")
                if domain_from_dn(dn).lower() != domain.lower() or not dn_within(dn, container):
                    continue
                if self._matches(entry, identity_type, value):
                    return self._record(kind, entry)
        return None

    def search_users(
        self,
        domain: str,
        container: Optional[str],
        name_filter: Optional[str] = None,
        enabled: Optional[bool] = None,
    ) -> List[Record]:
        lowered = name_filter.lower() if name_filter else None
        results: List[Record] = []
        with self._lock:
            for entry in self._data.get("users", []):
                dn = entry.get("distinguished_name", "")
                if domain_from_dn(dn).lower() != domain.lower() or not dn_within(dn, container):
                    continue
                attrs = entry.get("attributes", {})
                if lowered:
                    haystack = " ".join(
                        str(attrs.get(key) or "") for key in ("sAMAccountName", "displayName", "mail")
                    ).lower()
                    if lowered not in haystack:
                        continue
                if enabled is not None:
                    uac = int(attrs.get("userAccountControl", UAC_NORMAL_ACCOUNT))
                    if bool(uac & UAC_ACCOUNTDISABLE) == enabled:
                        continue
                results.append(self._record("users", entry))
        return results

    def find_group_dn_forest_wide(self, name: str) -> Optional[str]:
        lowered = name.strip().lower()
        with self._lock:
            for entry in self._data.get("groups", []):
                dn = entry["distinguished_name"]
                if not self.is_online(domain_from_dn(dn)):
                    continue
                attrs = entry.get("attributes", {})
                candidates = {_common_name(dn), attrs.get("name"), attrs.get("sAMAccountName")}
                if lowered in {str(candidate).lower() for candidate in candidates if candidate}:
                    return dn
        return None

    # Writes ---------------------------------------------------------------
    def add_user(self, distinguished_name: str, attributes: Dict[str, Any]) -> None:
        domain = domain_from_dn(distinguished_name)
        sam = str(attributes.get("sAMAccountName") or "")
        with self._lock:
            if self._entry("users", distinguished_name) or self._entry("groups", distinguished_name):
                raise DirectoryOperationFailed(
                    f"Object '{distinguished_name}' already exists.", "entryAlreadyExists", ENTRY_ALREADY_EXISTS
                )
            for entry in self._all_entries():
                if (
                    domain_from_dn(entry["distinguished_name"]).lower() == domain.lower()
                    and str(entry.get("attributes", {}).get("sAMAccountName", "")).lower() == sam.lower()
                ):
                    raise DirectoryOperationFailed(
                        f"The account name '{sam}' is already in use.", "entryAlreadyExists", ENTRY_ALREADY_EXISTS
                    )
            attrs = {key: self._stored(value) for key, value in attributes.items()}
            attrs.setdefault("userAccountControl", UAC_NORMAL_ACCOUNT | UAC_ACCOUNTDISABLE)
            attrs.setdefault("lockoutTime", 0)
            attrs["objectSid"] = f"{self.domain_sid(domain)}-{self._next_rid(domain)}"
            attrs["objectGUID"] = str(uuid.uuid4())
            attrs["primaryGroupID"] = DOMAIN_USERS_RID
            self._data.setdefault("users", []).append(
                {"distinguished_name": distinguished_name, "attributes": attrs}
            )
            self._save()

    def modify_user(self, distinguished_name: str, changes: Dict[str, Any]) -> None:
        with self._lock:
            entry = self._require("users", distinguished_name)
            attrs = entry.setdefault("attributes", {})
            for key, value in changes.items():
                attrs[key] = self._stored(value)
            self._save()

    def set_password(self, distinguished_name: str, password: str) -> None:
        self.modify_user(
            distinguished_name,
            {"unicodePwd": password, "pwdLastSet": datetime.now(timezone.utc)},
        )

    def delete_user(self, distinguished_name: str) -> bool:
        with self._lock:
            users = self._data.get("users", [])
            for index, user in enumerate(users):
                if same_dn(user.get("distinguished_name"), distinguished_name):
                    users.pop(index)
                    for group in self._data.get("groups", []):
                        members = group["attributes"].get("member", [])
                        group["attributes"]["member"] = [
                            member for member in members if not same_dn(member, distinguished_name)
                        ]
                    self._save()
                    return True
        return False

    # Membership -----------------------------------------------------------
    def _is_primary_group(self, group: Dict[str, Any], user: Dict[str, Any]) -> bool:
        group_sid = str(group["attributes"].get("objectSid") or "")
        user_sid = str(user["attributes"].get("objectSid") or "")
        if not group_sid or not user_sid or domain_sid(group_sid) != domain_sid(user_sid):
            return False
        return int(user["attributes"].get("primaryGroupID") or 0) == rid_from_sid(group_sid)

    @staticmethod
    def _is_explicit_member(group: Dict[str, Any], user_dn: str) -> bool:
        return any(same_dn(member, user_dn) for member in group["attributes"].get("member", []))

    def is_member(self, group_dn: str, user_dn: str) -> bool:
        with self._lock:
            group = self._require("groups", group_dn)
            user = self._entry("users", user_dn)
            if user is not None and self._is_primary_group(group, user):
                return True
            return self._is_explicit_member(group, user_dn)

    def add_member(self, group_dn: str, user_dn: str) -> bool:
        with self._lock:
            group = self._require("groups", group_dn)
            user = self._require("users", user_dn)
            if self._is_primary_group(group, user) or self._is_explicit_member(group, user_dn):
                return False
            group["attributes"].setdefault("member", []).append(user["distinguished_name"])
            self._save()
            return True

    def remove_member(self, group_dn: str, user_dn: str) -> bool:
        with self._lock:
            group = self._require("groups", group_dn)
            user = self._entry("users", user_dn)
            if user is not None and self._is_primary_group(group, user):
                raise DirectoryOperationFailed(
                    f"Cannot remove '{user_dn}' from its primary group.",
                    "constraintViolation",
                    CONSTRAINT_VIOLATION,
                )
            if not self._is_explicit_member(group, user_dn):
                return False
            group["attributes"]["member"] = [
                member for member in group["attributes"]["member"] if not same_dn(member, user_dn)
            ]
            self._save()
            return True

    def set_primary_group(self, user_dn: str, rid: int) -> None:
        with self._lock:
            user = self._require("users", user_dn)
            user_sid = str(user["attributes"].get("objectSid") or "")
            target_sid = f"{domain_sid(user_sid)}-{rid}"
            group = next(
                (
                    entry
                    for entry in self._data.get("groups", [])
                    if str(entry["attributes"].get("objectSid", "")).lower() == target_sid.lower()
                ),
                None,
            )
            if group is None or not self._is_explicit_member(group, user_dn):
                raise DirectoryOperationFailed(
                    f"Cannot set primary group {rid} for '{user_dn}'.",
                    "the account is not a member of the group",
                    CONSTRAINT_VIOLATION,
                )
            previous_rid = int(user["attributes"].get("primaryGroupID") or 0)
            previous_sid = f"{domain_sid(user_sid)}-{previous_rid}"
            for entry in self._data.get("groups", []):
                if str(entry["attributes"].get("objectSid", "")).lower() == previous_sid.lower():
                    if not self._is_explicit_member(entry, user_dn):
                        entry["attributes"].setdefault("member", []).append(user["distinguished_name"])
            group["attributes"]["member"] = [
                member for member in group["attributes"]["member"] if not same_dn(member, user_dn)
            ]
            user["attributes"]["primaryGroupID"] = rid
            self._save()

    @staticmethod
    def _stored(value: Any) -> Any:
        if isinstance(value, datetime):
            return value.isoformat()
        return value


__all__ = ["MockDirectory"]
