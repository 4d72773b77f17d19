"""Optional-group membership reconciliation."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .directory import DirectorySession
from .dn import normalize_names
from .errors import KeystoneError
from .finder import PrincipalFinder
from .models import GroupPrincipal, UserPrincipal

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def writes(self) -> int:
        return len(self.added) + len(self.removed)


class GroupMembershipReconciler:
    """Brings a user's membership in a managed set of groups to a desired state.

    Groups outside ``manageable`` are never read for removal nor written. Each
    addition and removal is attempted on its own; failures are recorded in the
    result and do not stop the others.
    """

    def __init__(self, finder: PrincipalFinder):
        self.finder = finder

    def reconcile(
        self,
        session: DirectorySession,
        user: UserPrincipal,
        desired: Iterable[str],
        manageable: Iterable[str],
    ) -> ReconcileResult:
        manageable_names = {name.lower(): name for name in normalize_names(manageable)}
        wanted = {
            name.lower(): name for name in normalize_names(desired) if name.lower() in manageable_names
        }

        current: Dict[str, GroupPrincipal] = {}
        for group in self.finder.groups_of(session, user):
            for candidate in (group.sam_account_name, group.name):
                if candidate and candidate.lower() in manageable_names:
                    current[candidate.lower()] = group
                    break

        result = ReconcileResult()
        for key, name in wanted.items():
            if key not in current:
                self._add(session, user, name, result)
        for key, group in current.items():
            if key not in wanted:
                self._remove(session, user, manageable_names[key], group, result)

        logger.info(
            "Reconciled groups of %s: added=%s removed=%s failed=%s",
            user.sam_account_name,
            result.added,
            result.removed,
            sorted(result.failed),
        )
        return result

    def add_groups(self, session: DirectorySession, user: UserPrincipal, names: Iterable[str]) -> ReconcileResult:
        result = ReconcileResult()
        for name in normalize_names(names):
            self._add(session, user, name, result)
        return result

    def _add(self, session: DirectorySession, user: UserPrincipal, name: str, result: ReconcileResult) -> None:
        try:
            group = self.finder.resolve_group(session, name)
            if group is None:
                logger.warning("Group '%s' not found; %s was not added", name, user.sam_account_name)
                result.failed[name] = "group not found"
                return
            with self.finder.session_for(session, group) as group_session:
                group_session.add_member(group, user)
        except KeystoneError as exc:
            logger.error("Unable to add %s to '%s': %s", user.sam_account_name, name, exc)
            result.failed[name] = str(exc)
            return
        result.added.append(name)

    def _remove(
        self,
        session: DirectorySession,
        user: UserPrincipal,
        name: str,
        group: GroupPrincipal,
        result: ReconcileResult,
    ) -> None:
        try:
            with self.finder.session_for(session, group) as group_session:
                removed = group_session.remove_member(group, user)
        except KeystoneError as exc:
            logger.error("Unable to remove %s from '%s': %s", user.sam_account_name, name, exc)
            result.failed[name] = str(exc)
            return
        if not removed:
            logger.debug("%s is not an explicit member of '%s'; nothing removed", user.sam_account_name, name)
            return
        result.removed.append(name)


__all__ = ["GroupMembershipReconciler", "ReconcileResult"]
