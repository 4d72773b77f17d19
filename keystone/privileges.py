"""Caller classification from group SID claims resolved across the managed domains."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from .config import AccessControlConfig
from .directory import SessionFactory
from .errors import ConnectivityError, KeystoneError
from .models import Caller, IdentityType, PrivilegeClassification

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrivilegeContext:
    caller: Caller
    classification: PrivilegeClassification
    group_names: Tuple[str, ...] = ()
    unresolved: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_high_privilege(self) -> bool:
        return self.classification is PrivilegeClassification.HIGH_PRIVILEGE

    @property
    def can_use_general_features(self) -> bool:
        return self.classification is not PrivilegeClassification.DENIED


class PrivilegeResolver:
    """Maps SIDs to group names, visiting domains in order until every SID is known."""

    def __init__(
        self,
        factory: SessionFactory,
        domains: Sequence[str],
        access_control: AccessControlConfig,
    ):
        self.factory = factory
        self.domains = tuple(domains)
        self.access_control = access_control

    def resolve(
        self, sids: Iterable[str], domains: Optional[Sequence[str]] = None
    ) -> Tuple[List[str], List[str]]:
        pending = list(dict.fromkeys(sid for sid in sids if sid))
        names: List[str] = []
        for domain in domains if domains is not None else self.domains:
            if not pending:
                break
            try:
                with self.factory.open(domain) as session:
                    for sid in list(pending):
                        try:
                            group = session.find_group(IdentityType.SID, sid)
                        except ConnectivityError:
                            raise
                        except KeystoneError as exc:
                            logger.log(TRACE, "Lookup of %s in %s failed: %s", sid, domain, exc)
                            continue
                        if group is None:
                            logger.log(TRACE, "SID %s is not a group in %s", sid, domain)
                            continue
                        names.append(group.sam_account_name or group.label)
                        pending.remove(sid)
            except ConnectivityError as exc:
                logger.error("Skipping domain %s while resolving caller groups: %s", domain, exc)

        if pending:
            logger.warning("Unresolved group SIDs: %s", ", ".join(pending))
        return names, pending

    def classify(self, caller: Caller) -> PrivilegeContext:
        names, unresolved = self.resolve(sorted(caller.group_sids))
        lowered = {name.lower() for name in names}
        high = {group.lower() for group in self.access_control.high_privilege_groups}
        general = {group.lower() for group in self.access_control.general_access_groups}

        if lowered & high:
            classification = PrivilegeClassification.HIGH_PRIVILEGE
        elif lowered & general:
            classification = PrivilegeClassification.GENERAL_ACCESS
        else:
            classification = PrivilegeClassification.DENIED
        logger.info("Caller %s classified as %s", caller.name, classification.value)
        return PrivilegeContext(caller, classification, tuple(names), tuple(unresolved))


__all__ = ["PrivilegeContext", "PrivilegeResolver", "TRACE"]
