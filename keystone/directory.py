"""Scoped directory sessions based on ldap3, with an in-process backend for ``mock://``."""
from __future__ import annotations

import contextlib
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from ldap3 import ALL, BASE, MODIFY_ADD, MODIFY_DELETE, MODIFY_REPLACE, SUBTREE, Connection, Server
from ldap3.core.exceptions import LDAPCommunicationError, LDAPException

from .config import AppConfig
from .dn import (
    datetime_to_filetime,
    dn_within,
    domain_components,
    domain_sid,
    escape_filter_value,
)
from .errors import (
    ENTRY_ALREADY_EXISTS,
    ConnectivityError,
    DirectoryOperationFailed,
    StaleObjectError,
    directory_error_from_result,
)
from .mock_directory import MockDirectory
from .models import GroupPrincipal, IdentityType, UserPrincipal

logger = logging.getLogger(__name__)

USER_FILTER = "(&(objectCategory=person)(objectClass=user))"
GROUP_FILTER = "(objectClass=group)"
USER_OBJECT_CLASSES = ["top", "person", "organizationalPerson", "user"]
USER_ATTRIBUTES = [
    "sAMAccountName",
    "objectSid",
    "objectGUID",
    "givenName",
    "sn",
    "displayName",
    "userPrincipalName",
    "mail",
    "userAccountControl",
    "lockoutTime",
    "accountExpires",
    "primaryGroupID",
    "memberOf",
]
GROUP_ATTRIBUTES = ["sAMAccountName", "objectSid", "objectGUID", "cn", "name", "description", "groupType"]
# LDAP_MATCHING_RULE_BIT_AND on ACCOUNTDISABLE.
_DISABLED_CLAUSE = "(userAccountControl:1.2.840.113556.1.4.803:=2)"


class DirectorySession:
    """A connection bound to one domain, optionally confined to one container."""

    def __init__(
        self,
        domain: str,
        container: Optional[str] = None,
        connection: Optional[Connection] = None,
        mock: Optional[MockDirectory] = None,
    ):
        self.domain = domain
        self.container = container
        self.connection = connection
        self._mock_directory = mock

    @property
    def search_base(self) -> str:
        return self.container or domain_components(self.domain)

    def close(self) -> None:
        if self.connection and self.connection.bound:
            self.connection.unbind()

    def __enter__(self) -> "DirectorySession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        self.close()

    # Lookup --------------------------------------------------------------
    def find_user(self, identity_type: IdentityType, value: str) -> Optional[UserPrincipal]:
        if self._mock_directory:
            record = self._mock_directory.find("users", self.domain, self.container, identity_type, value)
            return UserPrincipal.from_attributes(*record) if record else None

        entry = self._find_entry(USER_FILTER, identity_type, value, USER_ATTRIBUTES)
        if entry is None:
            return None
        return UserPrincipal.from_attributes(str(entry.entry_dn), entry.entry_attributes_as_dict)

    def find_group(self, identity_type: IdentityType, value: str) -> Optional[GroupPrincipal]:
        if self._mock_directory:
            record = self._mock_directory.find("groups", self.domain, self.container, identity_type, value)
            return GroupPrincipal.from_attributes(*record) if record else None

        entry = self._find_entry(GROUP_FILTER, identity_type, value, GROUP_ATTRIBUTES)
        if entry is None:
            return None
        return GroupPrincipal.from_attributes(str(entry.entry_dn), entry.entry_attributes_as_dict)

    def _find_entry(self, object_filter: str, identity_type: IdentityType, value: str, attributes: List[str]):
        if identity_type is IdentityType.DISTINGUISHED_NAME:
            if not dn_within(value, self.container) or not dn_within(value, domain_components(self.domain)):
                return None
            base, scope, search_filter = value, BASE, object_filter
        else:
            base, scope = self.search_base, SUBTREE
            search_filter = f"(&{object_filter}{self._identity_clause(identity_type, value)})"

        with self._ldap_errors(f"Search in '{base}' failed."):
            self.connection.search(
                search_base=base,
                search_filter=search_filter,
                search_scope=scope,
                attributes=attributes,
                size_limit=1,
            )
        entries = self.connection.entries
        return entries[0] if entries else None

    @staticmethod
    def _identity_clause(identity_type: IdentityType, value: str) -> str:
        if identity_type is IdentityType.SID:
            return f"(objectSid={escape_filter_value(value.strip())})"
        if identity_type is IdentityType.GUID:
            raw = uuid.UUID(value.strip().strip("{}")).bytes_le
            return "(objectGUID=" + "".join(f"\\{byte:02x}" for byte in raw) + ")"
        escaped = escape_filter_value(value.strip())
        if identity_type is IdentityType.SAM_ACCOUNT_NAME:
            return f"(sAMAccountName={escaped})"
        return f"(|(name={escaped})(cn={escaped})(displayName={escaped}))"

    def search_users(
        self, name_filter: Optional[str] = None, enabled: Optional[bool] = None
    ) -> List[UserPrincipal]:
        if self._mock_directory:
            return [
                UserPrincipal.from_attributes(dn, attributes)
                for dn, attributes in self._mock_directory.search_users(
                    self.domain, self.container, name_filter, enabled
                )
            ]

        clauses = [USER_FILTER]
        if name_filter:
            escaped = escape_filter_value(name_filter.strip())
            clauses.append(
                f"(|(sAMAccountName=*{escaped}*)(displayName=*{escaped}*)(mail=*{escaped}*))"
            )
        if enabled is True:
            clauses.append(f"(!{_DISABLED_CLAUSE})")
        elif enabled is False:
            clauses.append(_DISABLED_CLAUSE)

        with self._ldap_errors(f"User search in '{self.search_base}' failed."):
            results = list(
                self.connection.extend.standard.paged_search(
                    search_base=self.search_base,
                    search_filter="(&" + "".join(clauses) + ")",
                    search_scope=SUBTREE,
                    attributes=USER_ATTRIBUTES,
                    paged_size=500,
                    generator=True,
                )
            )
        return [
            UserPrincipal.from_attributes(entry["dn"], entry.get("attributes", {}))
            for entry in results
            if entry.get("type") == "searchResEntry"
        ]

    # Writes --------------------------------------------------------------
    def create_user(self, user: UserPrincipal) -> UserPrincipal:
        """Add ``user`` as a new entry and return the stored principal."""

        attributes = {key: self._ldap_value(key, value) for key, value in user.new_entry_attributes().items()}
        if self._mock_directory:
            self._mock_directory.add_user(user.distinguished_name, attributes)
        else:
            with self._ldap_errors("Active Directory rejected the user creation request."):
                added = self.connection.add(
                    dn=user.distinguished_name,
                    object_class=USER_OBJECT_CLASSES,
                    attributes=attributes,
                )
            if not added:
                raise directory_error_from_result(
                    "Active Directory rejected the user creation request.", self.connection.result
                )

        created = self.find_user(IdentityType.DISTINGUISHED_NAME, user.distinguished_name)
        if created is None:
            raise StaleObjectError(f"Created user '{user.distinguished_name}' could not be read back.")
        return created

    def save_user(self, user: UserPrincipal) -> bool:
        """Write the attributes changed since ``user`` was loaded. Returns False when none changed."""

        changes = user.changes()
        if not changes:
            return False
        if self._mock_directory:
            self._mock_directory.modify_user(user.distinguished_name, changes)
        else:
            self._modify(
                user.distinguished_name,
                {
                    key: [(MODIFY_REPLACE, self._replacement(key, value))]
                    for key, value in changes.items()
                },
                f"Unable to save '{user.sam_account_name}'.",
            )
        user.mark_clean()
        return True

    def set_password(self, user: UserPrincipal, password: str) -> None:
        if self._mock_directory:
            self._mock_directory.set_password(user.distinguished_name, password)
            return
        message = f"Unable to set the password of '{user.sam_account_name}'."
        with self._ldap_errors(message):
            changed = self.connection.extend.microsoft.modify_password(user.distinguished_name, password)
        if not changed:
            raise directory_error_from_result(message, self.connection.result)

    def expire_password(self, user: UserPrincipal) -> None:
        """Force a password change at next logon."""

        if self._mock_directory:
            self._mock_directory.modify_user(user.distinguished_name, {"pwdLastSet": 0})
            return
        self._modify(
            user.distinguished_name,
            {"pwdLastSet": [(MODIFY_REPLACE, [0])]},
            f"Unable to expire the password of '{user.sam_account_name}'.",
        )

    def delete_user(self, user: UserPrincipal) -> None:
        if self._mock_directory:
            if not self._mock_directory.delete_user(user.distinguished_name):
                raise StaleObjectError(f"Object '{user.distinguished_name}' does not exist.", None, 32)
            return
        message = f"Unable to delete '{user.sam_account_name}'."
        with self._ldap_errors(message):
            deleted = self.connection.delete(user.distinguished_name)
        if not deleted:
            raise directory_error_from_result(message, self.connection.result)

    # Membership ----------------------------------------------------------
    def is_member(self, group: GroupPrincipal, user: UserPrincipal) -> bool:
        if self._mock_directory:
            return self._mock_directory.is_member(group.distinguished_name, user.distinguished_name)
        if self._is_primary_group(group, user):
            return True
        return self._is_explicit_member(group, user)

    def add_member(self, group: GroupPrincipal, user: UserPrincipal) -> bool:
        """Add ``user`` to ``group``. Returns False when it already was a member."""

        if self._mock_directory:
            return self._mock_directory.add_member(group.distinguished_name, user.distinguished_name)
        if self.is_member(group, user):
            return False
        message = f"Unable to add '{user.sam_account_name}' to '{group.label}'."
        with self._ldap_errors(message):
            modified = self.connection.modify(
                group.distinguished_name, {"member": [(MODIFY_ADD, [user.distinguished_name])]}
            )
        if not modified:
            if (self.connection.result or {}).get("result") == ENTRY_ALREADY_EXISTS:
                return False
            raise directory_error_from_result(message, self.connection.result)
        return True

    def remove_member(self, group: GroupPrincipal, user: UserPrincipal) -> bool:
        """Remove ``user`` from ``group``. Returns False when it was not an explicit member."""

        if self._mock_directory:
            return self._mock_directory.remove_member(group.distinguished_name, user.distinguished_name)
        if not self._is_explicit_member(group, user):
            return False
        self._modify(
            group.distinguished_name,
            {"member": [(MODIFY_DELETE, [user.distinguished_name])]},
            f"Unable to remove '{user.sam_account_name}' from '{group.label}'.",
        )
        return True

    def set_primary_group(self, user: UserPrincipal, group: GroupPrincipal) -> None:
        if group.rid is None:
            raise DirectoryOperationFailed(f"Group '{group.label}' has no SID.")
        if self._mock_directory:
            self._mock_directory.set_primary_group(user.distinguished_name, group.rid)
        else:
            self._modify(
                user.distinguished_name,
                {"primaryGroupID": [(MODIFY_REPLACE, [group.rid])]},
                f"Unable to set the primary group of '{user.sam_account_name}' to '{group.label}'.",
            )
        user.primary_group_id = group.rid

    @staticmethod
    def _is_primary_group(group: GroupPrincipal, user: UserPrincipal) -> bool:
        if not group.sid or not user.sid or domain_sid(group.sid) != domain_sid(user.sid):
            return False
        return user.primary_group_id == group.rid

    def _is_explicit_member(self, group: GroupPrincipal, user: UserPrincipal) -> bool:
        escaped_dn = escape_filter_value(user.distinguished_name)
        with self._ldap_errors(f"Membership check on '{group.label}' failed."):
            self.connection.search(
                search_base=group.distinguished_name,
                search_filter=f"(&{GROUP_FILTER}(member={escaped_dn}))",
                search_scope=BASE,
                attributes=["distinguishedName"],
            )
        return bool(self.connection.entries)

    # Utilities -----------------------------------------------------------
    def _modify(self, distinguished_name: str, changes: Dict[str, Any], message: str) -> None:
        with self._ldap_errors(message):
            modified = self.connection.modify(distinguished_name, changes)
        if not modified:
            raise directory_error_from_result(message, self.connection.result)

    @contextlib.contextmanager
    def _ldap_errors(self, message: str) -> Iterator[None]:
        assert self.connection is not None
        try:
            yield
        except LDAPCommunicationError as exc:
            raise ConnectivityError(self.domain, str(exc)) from exc
        except LDAPException as exc:
            raise DirectoryOperationFailed(message, str(exc)) from exc

    @staticmethod
    def _ldap_value(key: str, value: Any) -> Any:
        if key == "accountExpires" or isinstance(value, datetime):
            return datetime_to_filetime(value)
        return value

    @classmethod
    def _replacement(cls, key: str, value: Any) -> List[Any]:
        if value is None and key != "accountExpires":
            return []
        return [cls._ldap_value(key, value)]


class SessionFactory:
    """Opens :class:`DirectorySession` objects for the configured forest."""

    def __init__(self, config: AppConfig, mock_directory: Optional[MockDirectory] = None):
        self.config = config
        if mock_directory is None and config.ldap.is_mock:
            mock_directory = MockDirectory(config.ldap.mock_data_file)
        self.mock_directory = mock_directory

    @contextlib.contextmanager
    def open(self, domain: str, container: Optional[str] = None) -> Iterator[DirectorySession]:
        session = self.connect(domain, container)
        try:
            yield session
        finally:
            session.close()

    def connect(self, domain: str, container: Optional[str] = None) -> DirectorySession:
        if self.mock_directory:
            if not self.mock_directory.is_online(domain):
                raise ConnectivityError(domain, "the domain controller did not respond")
            return DirectorySession(domain, container, mock=self.mock_directory)

        ldap = self.config.ldap
        uri = ldap.uri_for(domain)
        try:
            server = Server(uri, use_ssl=ldap.use_ssl, get_info=ALL, connect_timeout=ldap.connect_timeout)
            connection = Connection(
                server,
                user=ldap.user_dn,
                password=ldap.password,
                auto_bind=True,
                receive_timeout=ldap.receive_timeout,
            )
        except LDAPException as exc:
            raise ConnectivityError(domain, str(exc)) from exc
        logger.debug("Bound to %s for %s (container=%s)", uri, domain, container or "-")
        return DirectorySession(domain, container, connection=connection)


class GlobalCatalog:
    """Forest-wide group lookup used when a group is not found in the bound domain."""

    def __init__(self, config: AppConfig, mock_directory: Optional[MockDirectory] = None):
        self.config = config
        self._mock_directory = mock_directory

    def lookup(self, name: str) -> Optional[str]:
        name = (name or "").strip()
        if not name:
            return None
        if self._mock_directory:
            return self._mock_directory.find_group_dn_forest_wide(name)

        ldap = self.config.ldap
        escaped = escape_filter_value(name)
        search_filter = f"(&{GROUP_FILTER}(|(cn={escaped})(name={escaped})(sAMAccountName={escaped})))"
        uri = ldap.global_catalog_uri.replace("{forest_root}", self.config.forest_root_domain)
        try:
            server = Server(uri, connect_timeout=ldap.connect_timeout)
            with Connection(
                server,
                user=ldap.user_dn,
                password=ldap.password,
                auto_bind=True,
                receive_timeout=ldap.receive_timeout,
            ) as connection:
                connection.search(
                    search_base="",
                    search_filter=search_filter,
                    search_scope=SUBTREE,
                    attributes=["distinguishedName"],
                    size_limit=1,
                )
                entries = connection.entries
                return str(entries[0].entry_dn) if entries else None
        except LDAPException as exc:
            logger.warning("Global catalog lookup for '%s' failed: %s", name, exc)
            return None


__all__ = ["DirectorySession", "GlobalCatalog", "SessionFactory"]
