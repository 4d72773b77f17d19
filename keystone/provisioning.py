"""Account lifecycle operations for standard accounts and their ``-a`` admin accounts."""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .config import AppConfig
from .directory import DirectorySession, GlobalCatalog, SessionFactory
from .dn import (
    admin_sam_for,
    domain_from_dn,
    escape_rdn_value,
    normalize_names,
    ou_for_domain,
    safe_sam,
)
from .errors import KeystoneError, NotFound, PermissionDenied
from .finder import PrincipalFinder
from .membership import GroupMembershipReconciler, ReconcileResult
from .models import (
    AdminAccountDetails,
    Caller,
    CreateUserRequest,
    CreateUserResponse,
    IdentityType,
    ProvisioningOutcome,
    ResetAdminPasswordRequest,
    UpdateUserRequest,
    UserAccountDetails,
    UserActionRequest,
    UserDetail,
    UserListItem,
    UserPrincipal,
)
from .passwords import PasswordGenerator
from .primary_group import PrimaryGroupAssigner, PrimaryGroupState
from .privileges import PrivilegeContext, PrivilegeResolver

logger = logging.getLogger(__name__)

STATUS_FILTERS = {"enabled": True, "disabled": False, "all": None}


class AccountService:
    """Entry point for every account operation.

    Each public operation classifies the caller exactly once and passes the
    resulting :class:`PrivilegeContext` down. Steps after the account itself has
    been written are best-effort: their failures are logged and recorded in a
    :class:`ProvisioningOutcome`, never rolled back.
    """

    def __init__(
        self,
        config: AppConfig,
        factory: Optional[SessionFactory] = None,
        resolver: Optional[PrivilegeResolver] = None,
        password_generator: Optional[PasswordGenerator] = None,
        global_catalog: Optional[GlobalCatalog] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        provisioning = config.provisioning
        self.config = config
        self.factory = factory or SessionFactory(config)
        self.global_catalog = global_catalog or GlobalCatalog(config, self.factory.mock_directory)
        self.finder = PrincipalFinder(self.factory, self.global_catalog)
        self.resolver = resolver or PrivilegeResolver(self.factory, config.domains, config.access_control)
        self.passwords = password_generator or PasswordGenerator(length=provisioning.password_length)
        self.reconciler = GroupMembershipReconciler(self.finder)
        self.primary_groups = PrimaryGroupAssigner(
            self.finder,
            default_group=provisioning.default_group,
            attempts=provisioning.primary_group_attempts,
            base_delay=provisioning.primary_group_retry_delay,
            sleep=sleep,
        )

    # Authorization -------------------------------------------------------
    def _authorize(self, caller: Caller, high_privilege: bool = False) -> PrivilegeContext:
        context = self.resolver.classify(caller)
        if not context.can_use_general_features:
            raise PermissionDenied(f"{caller.name} is not allowed to use this application.")
        if high_privilege and not context.is_high_privilege:
            raise PermissionDenied(f"{caller.name} lacks the high-privilege group required for this action.")
        return context

    def _check_domain(self, domain: str) -> None:
        if not self.config.is_managed_domain(domain):
            raise ValueError(f"Domain '{domain}' is not managed by this application.")

    def _check_allowed_groups(self, groups: Iterable[str]) -> None:
        allowed = {name.lower() for name in self.config.provisioning.optional_groups}
        rejected = [name for name in groups if name.lower() not in allowed]
        if rejected:
            raise PermissionDenied("Groups not available for assignment: " + ", ".join(rejected))

    # Queries -------------------------------------------------------------
    def list_users(
        self,
        caller: Caller,
        domain: str,
        name_filter: Optional[str] = None,
        status_filter: Optional[str] = None,
        has_admin_account: Optional[bool] = None,
    ) -> List[UserListItem]:
        self._authorize(caller)
        self._check_domain(domain)
        status = (status_filter or "all").strip().lower()
        if status not in STATUS_FILTERS:
            raise ValueError(f"Unknown status filter '{status_filter}'.")

        bases = [
            ou for ou in self.config.provisioning.search_base_ous if domain_from_dn(ou).lower() == domain.lower()
        ]
        if not bases:
            logger.warning("No search base OU configured for %s", domain)
            return []

        found: Dict[str, UserPrincipal] = {}
        for base in bases:
            try:
                with self.factory.open(domain, base) as session:
                    for user in session.search_users(name_filter, STATUS_FILTERS[status]):
                        found.setdefault(user.sam_account_name.lower(), user)
            except KeystoneError as exc:
                logger.error("Searching %s failed: %s", base, exc)

        items: List[UserListItem] = []
        with self.factory.open(domain) as session:
            for user in found.values():
                has_admin = self._find_admin(session, user.sam_account_name) is not None
                if has_admin_account is not None and has_admin != has_admin_account:
                    continue
                items.append(
                    UserListItem(
                        display_name=user.display_name,
                        sam_account_name=user.sam_account_name,
                        email_address=user.email,
                        enabled=user.enabled,
                        has_admin_account=has_admin,
                        account_expiration_date=user.account_expires,
                    )
                )
        items.sort(key=lambda item: (item.display_name or item.sam_account_name).casefold())
        return items

    def get_user_details(self, caller: Caller, domain: str, sam_account_name: str) -> UserDetail:
        context = self._authorize(caller)
        self._check_domain(domain)
        with self.factory.open(domain) as session:
            user = self._require_user(session, sam_account_name)
            has_admin = self._find_admin(session, user.sam_account_name) is not None
            groups = self.finder.groups_of(session, user)
        return UserDetail(
            display_name=user.display_name or user.sam_account_name,
            sam_account_name=user.sam_account_name,
            first_name=user.given_name,
            last_name=user.surname,
            enabled=user.enabled,
            locked_out=user.locked_out,
            has_admin_account=has_admin,
            member_of=sorted((group.label for group in groups), key=str.casefold),
            account_expiration_date=user.account_expires,
            can_auto_reset_password=context.is_high_privilege and has_admin,
        )

    def get_settings(self, caller: Caller) -> Dict[str, Any]:
        context = self.resolver.classify(caller)
        provisioning = self.config.provisioning
        general: List[str] = []
        high: List[str] = []
        if context.can_use_general_features:
            general = list(provisioning.optional_groups_general)
        if context.is_high_privilege:
            high = list(provisioning.optional_groups_high_privilege)
        return {
            "domains": list(self.config.domains),
            "optionalGroupsGeneral": general,
            "optionalGroupsHighPrivilege": high,
        }

    def describe_caller(self, caller: Caller) -> Dict[str, Any]:
        context = self._authorize(caller)
        return {
            "name": caller.name,
            "isHighPrivilege": context.is_high_privilege,
            "canCreateUsers": context.can_use_general_features,
            "groups": list(context.group_names),
        }

    # Creation ------------------------------------------------------------
    def create_user(self, caller: Caller, request: CreateUserRequest) -> CreateUserResponse:
        context = self._authorize(caller)
        self._check_domain(request.domain)
        groups = normalize_names(request.optional_groups)
        if (groups or request.create_admin_account) and not context.is_high_privilege:
            raise PermissionDenied(
                "Only high-privilege callers may assign optional groups or create admin accounts."
            )
        self._check_allowed_groups(groups)

        domain = request.domain
        sam = safe_sam(request.sam_account_name)
        container = ou_for_domain(self.config.provisioning.default_user_ou_format, domain)
        password = self.passwords.generate()
        outcome = ProvisioningOutcome()

        with self.factory.open(domain) as session:
            user = self._create_account(
                session,
                UserPrincipal(
                    distinguished_name=f"CN={escape_rdn_value(request.display_name)},{container}",
                    sam_account_name=sam,
                    given_name=request.first_name,
                    surname=request.last_name,
                    display_name=request.display_name,
                    user_principal_name=f"{sam}@{domain}",
                    account_expires=request.account_expiration_date,
                ),
                password,
                expire_password=True,
            )
            outcome.ok("create_user", user.distinguished_name)
            logger.info("Created %s for %s", user.distinguished_name, caller.name)

            associated: List[str] = []
            if groups:
                result = self.reconciler.add_groups(session, user, groups)
                self._record_groups(outcome, result)
                associated = list(result.added)

        admin: Optional[AdminAccountDetails] = None
        if request.create_admin_account:
            try:
                admin = self.create_associated_admin_account(request, groups)
            except KeystoneError as exc:
                logger.error("Admin account for %s was not created: %s", sam, exc)
                outcome.failed("create_admin_account", str(exc))
            else:
                outcome.extend(admin.outcome)

        message = f"User {sam} created."
        if outcome.failures:
            message += f" {len(outcome.failures)} step(s) failed; see steps for details."
        return CreateUserResponse(
            message=message,
            user_account=UserAccountDetails(
                sam_account_name=sam,
                display_name=request.display_name,
                user_principal_name=user.user_principal_name or f"{sam}@{domain}",
                initial_password=password,
            ),
            admin_account=admin,
            groups_associated=associated,
            outcome=outcome,
        )

    def create_associated_admin_account(
        self, request: CreateUserRequest, groups: Iterable[str]
    ) -> AdminAccountDetails:
        """Create and populate the ``-a`` account paired with ``request.sam_account_name``.

        Creating the entry and setting its password raise on failure. Group
        assignment and the primary-group move are best-effort and reported in the
        returned outcome.
        """

        provisioning = self.config.provisioning
        domain = request.domain
        admin_sam = admin_sam_for(request.sam_account_name)
        display_name = f"admin-{request.first_name}{request.last_name}".lower()
        container = ou_for_domain(provisioning.admin_user_ou_format, domain)
        password = self.passwords.generate()
        outcome = ProvisioningOutcome()
        admin_groups = normalize_names(
            [*groups, *([provisioning.admin_group] if provisioning.admin_group else [])]
        )

        with self.factory.open(domain) as session:
            admin = self._create_account(
                session,
                UserPrincipal(
                    distinguished_name=f"CN={escape_rdn_value(display_name)},{container}",
                    sam_account_name=admin_sam,
                    given_name=request.first_name,
                    surname=request.last_name,
                    display_name=display_name,
                    user_principal_name=f"{admin_sam}@{domain}",
                    account_expires=self._admin_expiry(),
                ),
                password,
                expire_password=False,
            )
            outcome.ok("create_admin_account", admin.distinguished_name)

            result = self.reconciler.add_groups(session, admin, admin_groups)
            self._record_groups(outcome, result)

            if admin_groups:
                primary = self.primary_groups.assign(session, admin, admin_groups[0])
                if primary.state is PrimaryGroupState.PRIMARY_SET:
                    outcome.ok("primary_group", primary.group.label if primary.group else admin_groups[0])
                elif primary.state is PrimaryGroupState.SKIPPED:
                    outcome.skipped("primary_group", admin_groups[0])
                else:
                    outcome.failed("primary_group", f"{primary.state.value}: {primary.detail}")
            else:
                outcome.skipped("primary_group", "no candidate group")

        logger.info("Created admin account %s (%d failed step(s))", admin_sam, len(outcome.failures))
        return AdminAccountDetails(
            sam_account_name=admin_sam,
            display_name=display_name,
            user_principal_name=f"{admin_sam}@{domain}",
            initial_password=password,
            outcome=outcome,
        )

    def _create_account(
        self,
        session: DirectorySession,
        template: UserPrincipal,
        password: str,
        expire_password: bool,
    ) -> UserPrincipal:
        user = session.create_user(template)
        session.set_password(user, password)
        user.enabled = True
        session.save_user(user)
        if expire_password:
            session.expire_password(user)
        return user

    # Updates -------------------------------------------------------------
    def update_user(self, caller: Caller, request: UpdateUserRequest) -> ProvisioningOutcome:
        self._authorize(caller, high_privilege=True)
        self._check_domain(request.domain)
        groups = normalize_names(request.optional_groups or [])
        self._check_allowed_groups(groups)
        outcome = ProvisioningOutcome()

        with self.factory.open(request.domain) as session:
            user = self._require_user(session, request.sam_account_name)
            user.given_name = request.first_name
            user.surname = request.last_name
            user.display_name = f"{request.first_name} {request.last_name}".strip()
            user.account_expires = request.account_expiration_date
            if session.save_user(user):
                outcome.ok("update_attributes")
            else:
                outcome.skipped("update_attributes", "no changes")

            result = self.reconciler.reconcile(
                session, user, groups, self.config.provisioning.optional_groups
            )
            self._record_groups(outcome, result)

            admin = self._find_admin(session, user.sam_account_name)
            if request.manage_admin_account and admin is None:
                self._add_admin_during_update(request, groups, outcome)
            elif not request.manage_admin_account and admin is not None:
                self._retire_admin(session, admin, outcome)
            else:
                outcome.skipped("admin_account", "already in the requested state")

        logger.info("Updated %s for %s (%d failed step(s))", request.sam_account_name, caller.name, len(outcome.failures))
        return outcome

    def _add_admin_during_update(
        self, request: UpdateUserRequest, groups: List[str], outcome: ProvisioningOutcome
    ) -> None:
        create_request = CreateUserRequest(
            domain=request.domain,
            first_name=request.first_name,
            last_name=request.last_name,
            sam_account_name=request.sam_account_name,
            optional_groups=groups,
            create_admin_account=True,
        )
        try:
            details = self.create_associated_admin_account(create_request, groups)
        except KeystoneError as exc:
            logger.error("Admin account for %s was not created: %s", request.sam_account_name, exc)
            outcome.failed("create_admin_account", str(exc))
            return
        outcome.extend(details.outcome)

    def _retire_admin(self, session: DirectorySession, admin: UserPrincipal, outcome: ProvisioningOutcome) -> None:
        policy = self.config.provisioning.admin_account_retirement
        try:
            if policy == "delete":
                session.delete_user(admin)
                outcome.ok("retire_admin_account", "deleted")
            elif admin.enabled:
                admin.enabled = False
                session.save_user(admin)
                outcome.ok("retire_admin_account", "disabled")
            else:
                outcome.skipped("retire_admin_account", "already disabled")
        except KeystoneError as exc:
            logger.error("Unable to retire %s: %s", admin.sam_account_name, exc)
            outcome.failed("retire_admin_account", str(exc))
            return
        logger.info("Admin account %s retired (%s)", admin.sam_account_name, policy)

    # Credentials and state -----------------------------------------------
    def reset_password(self, caller: Caller, request: UserActionRequest) -> str:
        self._authorize(caller)
        self._check_domain(request.domain)
        password = self.passwords.generate()
        with self.factory.open(request.domain) as session:
            user = self._require_user(session, request.sam_account_name)
            session.set_password(user, password)
            session.expire_password(user)
            user.unlock()
            session.save_user(user)
        logger.info("Password of %s reset by %s", user.sam_account_name, caller.name)
        return password

    def reset_admin_password(self, caller: Caller, request: ResetAdminPasswordRequest) -> str:
        self._authorize(caller, high_privilege=True)
        self._check_domain(request.domain)
        admin_sam = admin_sam_for(request.sam_account_name)
        container = ou_for_domain(self.config.provisioning.admin_user_ou_format, request.domain)
        password = self.passwords.generate()
        with self.factory.open(request.domain, container) as session:
            admin = session.find_user(IdentityType.SAM_ACCOUNT_NAME, admin_sam)
            if admin is None:
                raise NotFound(f"Admin account '{admin_sam}' not found in {container}.")
            session.set_password(admin, password)
            admin.unlock()
            admin.account_expires = self._admin_expiry()
            session.save_user(admin)
        logger.info("Password of %s reset by %s", admin_sam, caller.name)
        return password

    def unlock(self, caller: Caller, request: UserActionRequest) -> bool:
        return self._change_state(
            caller, request, "unlock", lambda user: not user.locked_out, UserPrincipal.unlock
        )

    def enable(self, caller: Caller, request: UserActionRequest) -> bool:
        return self._change_state(
            caller, request, "enable", lambda user: user.enabled, lambda user: setattr(user, "enabled", True)
        )

    def disable(self, caller: Caller, request: UserActionRequest) -> bool:
        return self._change_state(
            caller,
            request,
            "disable",
            lambda user: not user.enabled,
            lambda user: setattr(user, "enabled", False),
        )

    def _change_state(
        self,
        caller: Caller,
        request: UserActionRequest,
        action: str,
        already_done: Callable[[UserPrincipal], bool],
        apply: Callable[[UserPrincipal], None],
    ) -> bool:
        self._authorize(caller)
        self._check_domain(request.domain)
        with self.factory.open(request.domain) as session:
            user = self._require_user(session, request.sam_account_name)
            if already_done(user):
                logger.info("%s: %s needs no change", action, user.sam_account_name)
                return False
            apply(user)
            session.save_user(user)
        logger.info("%s: %s done by %s", action, user.sam_account_name, caller.name)
        return True

    # Helpers -------------------------------------------------------------
    @staticmethod
    def _require_user(session: DirectorySession, sam_account_name: str) -> UserPrincipal:
        user = session.find_user(IdentityType.SAM_ACCOUNT_NAME, sam_account_name)
        if user is None:
            raise NotFound(f"User '{sam_account_name}' not found in {session.domain}.")
        return user

    @staticmethod
    def _find_admin(session: DirectorySession, sam_account_name: str) -> Optional[UserPrincipal]:
        return session.find_user(IdentityType.SAM_ACCOUNT_NAME, admin_sam_for(sam_account_name))

    def _admin_expiry(self) -> datetime:
        days = self.config.provisioning.admin_account_lifetime_days
        return datetime.now(timezone.utc) + timedelta(days=days)

    @staticmethod
    def _record_groups(outcome: ProvisioningOutcome, result: ReconcileResult) -> None:
        for name in result.added:
            outcome.ok(f"group:{name}", "added")
        for name in result.removed:
            outcome.ok(f"group:{name}", "removed")
        for name, detail in result.failed.items():
            outcome.failed(f"group:{name}", detail)


__all__ = ["AccountService", "STATUS_FILTERS"]
