"""Principal lookup by loose identity references, with a forest-wide fallback."""
from __future__ import annotations

import contextlib
import logging
from typing import Iterator, List, Optional, Tuple

from .directory import DirectorySession, GlobalCatalog, SessionFactory
from .dn import domain_from_dn, domain_sid, looks_like_sid, parse_guid
from .errors import KeystoneError
from .models import GroupPrincipal, IdentityType, UserPrincipal

logger = logging.getLogger(__name__)

RESOLUTION_ORDER: Tuple[IdentityType, ...] = (
    IdentityType.DISTINGUISHED_NAME,
    IdentityType.SID,
    IdentityType.GUID,
    IdentityType.SAM_ACCOUNT_NAME,
    IdentityType.NAME,
)


def _could_match(identity_type: IdentityType, value: str) -> bool:
    if identity_type is IdentityType.DISTINGUISHED_NAME:
        return "=" in value
    if identity_type is IdentityType.SID:
        return looks_like_sid(value)
    if identity_type is IdentityType.GUID:
        return parse_guid(value) is not None
    return True


class PrincipalFinder:
    def __init__(self, factory: SessionFactory, global_catalog: Optional[GlobalCatalog] = None):
        self.factory = factory
        self.global_catalog = global_catalog

    def find_user(
        self, session: DirectorySession, identity_type: IdentityType, value: str
    ) -> Optional[UserPrincipal]:
        return session.find_user(identity_type, value)

    def find_group(
        self, session: DirectorySession, identity_type: IdentityType, value: str
    ) -> Optional[GroupPrincipal]:
        return session.find_group(identity_type, value)

    def resolve_group(self, session: DirectorySession, raw: str) -> Optional[GroupPrincipal]:
        """Find a group from a DN, SID, GUID, logon name or display name.

        The bound domain is searched first, one identity type at a time in
        ``RESOLUTION_ORDER``; the first hit wins. When nothing matches, the global
        catalog is asked for a DN and the group is read from its own domain.
        """

        value = (raw or "").strip()
        if not value:
            return None

        for identity_type in RESOLUTION_ORDER:
            if not _could_match(identity_type, value):
                continue
            try:
                group = session.find_group(identity_type, value)
            except KeystoneError as exc:
                logger.debug("Lookup of group '%s' by %s failed: %s", value, identity_type.value, exc)
                continue
            if group is not None:
                return group

        return self._resolve_forest_wide(value)

    def _resolve_forest_wide(self, value: str) -> Optional[GroupPrincipal]:
        if self.global_catalog is None:
            return None
        distinguished_name = self.global_catalog.lookup(value)
        if not distinguished_name:
            logger.info("Group '%s' was not found anywhere in the forest", value)
            return None
        domain = domain_from_dn(distinguished_name)
        try:
            with self.factory.open(domain) as session:
                return session.find_group(IdentityType.DISTINGUISHED_NAME, distinguished_name)
        except KeystoneError as exc:
            logger.warning("Group '%s' found at %s but could not be read: %s", value, distinguished_name, exc)
            return None

    def groups_of(self, session: DirectorySession, user: UserPrincipal) -> List[GroupPrincipal]:
        """Groups ``user`` belongs to: every ``memberOf`` entry plus the primary group."""

        groups: List[GroupPrincipal] = []
        for distinguished_name in user.member_of:
            group_domain = domain_from_dn(distinguished_name)
            try:
                if group_domain.lower() == session.domain.lower():
                    group = session.find_group(IdentityType.DISTINGUISHED_NAME, distinguished_name)
                else:
                    with self.factory.open(group_domain) as remote:
                        group = remote.find_group(IdentityType.DISTINGUISHED_NAME, distinguished_name)
            except KeystoneError as exc:
                logger.warning("Skipping group %s of %s: %s", distinguished_name, user.sam_account_name, exc)
                continue
            if group is not None:
                groups.append(group)

        if user.sid and user.primary_group_id:
            primary_sid = f"{domain_sid(user.sid)}-{user.primary_group_id}"
            try:
                primary = session.find_group(IdentityType.SID, primary_sid)
            except KeystoneError as exc:
                logger.warning("Primary group %s of %s not readable: %s", primary_sid, user.sam_account_name, exc)
                primary = None
            if primary is not None and all(
                group.distinguished_name.lower() != primary.distinguished_name.lower() for group in groups
            ):
                groups.append(primary)
        return groups

    @contextlib.contextmanager
    def session_for(self, session: DirectorySession, principal) -> Iterator[DirectorySession]:
        """Yield ``session`` when ``principal`` lives in its domain, else a session for that domain."""

        if principal.domain.lower() == session.domain.lower():
            yield session
            return
        with self.factory.open(principal.domain) as remote:
            yield remote


__all__ = ["PrincipalFinder", "RESOLUTION_ORDER"]
