"""Primary-group reassignment with bounded retry."""
from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .directory import DirectorySession
from .errors import ConnectivityError, DirectoryOperationFailed, KeystoneError, RetryExhausted, StaleObjectError
from .finder import PrincipalFinder
from .models import GroupPrincipal, IdentityType, UserPrincipal

logger = logging.getLogger(__name__)


class PrimaryGroupState(str, enum.Enum):
    SKIPPED = "skipped"
    GROUP_NOT_FOUND = "group_not_found"
    NOT_ELIGIBLE = "not_eligible"
    NOT_MEMBER = "not_member"
    ADDED = "added"
    MEMBERSHIP_FAILED = "membership_failed"
    PRIMARY_SET = "primary_set"
    RETRY_EXHAUSTED = "retry_exhausted"


@dataclass
class PrimaryGroupResult:
    state: PrimaryGroupState
    group: Optional[GroupPrincipal] = None
    attempts: int = 0
    detail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is PrimaryGroupState.PRIMARY_SET


class PrimaryGroupAssigner:
    """Moves a user's primary group off the default group.

    AD only accepts a primary group the user is already a member of, and the
    membership written a moment earlier may not have replicated yet, so the
    ``primaryGroupID`` write is retried with a doubling delay. The prior primary
    group stays in place on every failure path.
    """

    def __init__(
        self,
        finder: PrincipalFinder,
        default_group: str = "Domain Users",
        attempts: int = 4,
        base_delay: float = 0.6,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.finder = finder
        self.default_group = default_group
        self.attempts = max(1, attempts)
        self.base_delay = base_delay
        self.sleep = sleep

    def assign(self, session: DirectorySession, user: UserPrincipal, group_name: str) -> PrimaryGroupResult:
        if (group_name or "").strip().lower() == self.default_group.lower():
            logger.warning(
                "'%s' is already the default primary group of %s; nothing to do",
                group_name,
                user.sam_account_name,
            )
            return PrimaryGroupResult(PrimaryGroupState.SKIPPED)

        group = self.finder.resolve_group(session, group_name)
        if group is None:
            logger.error("Primary group '%s' for %s not found", group_name, user.sam_account_name)
            return PrimaryGroupResult(PrimaryGroupState.GROUP_NOT_FOUND, detail=f"'{group_name}' not found")
        if not group.is_security_group or group.scope != "global" or group.rid is None:
            logger.error(
                "'%s' cannot be a primary group (security=%s, scope=%s)",
                group.label,
                group.is_security_group,
                group.scope,
            )
            return PrimaryGroupResult(
                PrimaryGroupState.NOT_ELIGIBLE, group, detail="only global security groups qualify"
            )

        state = self._ensure_membership(session, user, group)
        if state is PrimaryGroupState.MEMBERSHIP_FAILED:
            return PrimaryGroupResult(state, group, detail=f"could not add to '{group.label}'")

        result = self._write_primary_group(session, user, group)
        if result.succeeded:
            self._remove_default_group(session, user)
        return result

    def _ensure_membership(
        self, session: DirectorySession, user: UserPrincipal, group: GroupPrincipal
    ) -> PrimaryGroupState:
        try:
            with self.finder.session_for(session, group) as group_session:
                if group_session.is_member(group, user):
                    return PrimaryGroupState.ADDED
                logger.debug(
                    "%s: %s -> %s", PrimaryGroupState.NOT_MEMBER.value, user.sam_account_name, group.label
                )
                group_session.add_member(group, user)
        except KeystoneError as exc:
            logger.error("Unable to add %s to %s: %s", user.sam_account_name, group.label, exc)
            return PrimaryGroupState.MEMBERSHIP_FAILED
        return PrimaryGroupState.ADDED

    def _write_primary_group(
        self, session: DirectorySession, user: UserPrincipal, group: GroupPrincipal
    ) -> PrimaryGroupResult:
        delay = self.base_delay
        last_error: Optional[KeystoneError] = None
        for attempt in range(1, self.attempts + 1):
            try:
                current = session.find_user(IdentityType.DISTINGUISHED_NAME, user.distinguished_name)
                if current is None:
                    raise StaleObjectError(f"'{user.distinguished_name}' is not visible yet.")
                session.set_primary_group(current, group)
            except (DirectoryOperationFailed, ConnectivityError) as exc:
                last_error = exc
                logger.warning(
                    "Setting primary group of %s to %s failed (attempt %d/%d): %s",
                    user.sam_account_name,
                    group.label,
                    attempt,
                    self.attempts,
                    exc,
                )
                if attempt < self.attempts:
                    self.sleep(delay)
                    delay *= 2
                continue
            user.primary_group_id = group.rid
            logger.info("Primary group of %s set to %s", user.sam_account_name, group.label)
            return PrimaryGroupResult(PrimaryGroupState.PRIMARY_SET, group, attempt)

        exhausted = RetryExhausted("set primary group", self.attempts, last_error)
        logger.error("%s for %s (%s): %s", exhausted, user.sam_account_name, group.label, last_error)
        return PrimaryGroupResult(PrimaryGroupState.RETRY_EXHAUSTED, group, self.attempts, str(exhausted))

    def _remove_default_group(self, session: DirectorySession, user: UserPrincipal) -> None:
        try:
            default = self.finder.resolve_group(session, self.default_group)
            if default is None:
                logger.warning("Default group '%s' not found; membership left as is", self.default_group)
                return
            session.remove_member(default, user)
            logger.info("Removed %s from %s", user.sam_account_name, default.label)
        except KeystoneError as exc:
            logger.warning("Unable to remove %s from %s: %s", user.sam_account_name, self.default_group, exc)


__all__ = ["PrimaryGroupAssigner", "PrimaryGroupResult", "PrimaryGroupState"]
