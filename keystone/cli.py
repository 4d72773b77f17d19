"""Command line interface for the KeyStone account toolkit."""
from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, List, Optional

import typer

from .config import ENV_CALLER_SIDS, AppConfig, ConfigurationError, load_config
from .dn import parse_datetime
from .errors import KeystoneError
from .models import (
    Caller,
    CreateUserRequest,
    ResetAdminPasswordRequest,
    UpdateUserRequest,
    UserActionRequest,
)
from .provisioning import AccountService

app = typer.Typer(help="Manage directory accounts and their paired admin accounts.")
user_app = typer.Typer(help="Create, update and maintain user accounts.")
app.add_typer(user_app, name="user")

ConfigOption = typer.Option(None, "--config", help="Path to a specific settings file (overrides default).")
SidOption = typer.Option(
    None,
    "--sid",
    help=f"Group SID held by the caller (repeatable). Defaults to ${ENV_CALLER_SIDS}.",
)
CallerOption = typer.Option(None, "--caller", help="Name recorded for the caller in logs.")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level (DEBUG, INFO, ...)."),
) -> None:
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _service(config_path: Optional[Path]) -> AccountService:
    return AccountService(_load_configuration(config_path))


def _caller(name: Optional[str], sids: Optional[List[str]]) -> Caller:
    values = list(sids or [])
    if not values:
        values = os.environ.get(ENV_CALLER_SIDS, "").replace(";", ",").split(",")
    return Caller.from_claims(name or os.environ.get("USER") or "cli", values)


def _expiry(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = parse_datetime(value)
    if parsed is None:
        raise typer.BadParameter(f"'{value}' is not an ISO-8601 date.")
    return parsed


def _execute(action: Callable[[], Any]) -> Any:
    try:
        return action()
    except (KeystoneError, ValueError) as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _print(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2))


@app.command("whoami")
def whoami(
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Resolve the caller's group SIDs and show the privilege classification."""

    service = _service(config_path)
    caller = _caller(caller_name, sid)
    context = _execute(lambda: service.resolver.classify(caller))
    _print(
        {
            "name": caller.name,
            "classification": context.classification.value,
            "groups": list(context.group_names),
            "unresolved": list(context.unresolved),
        }
    )


@app.command("settings")
def show_settings(
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Show the domains and optional groups available to the caller."""

    service = _service(config_path)
    _print(_execute(lambda: service.get_settings(_caller(caller_name, sid))))


@user_app.command("list")
def list_users(
    domain: str = typer.Argument(..., help="Managed domain, e.g. corp.local."),
    name_filter: Optional[str] = typer.Option(None, "--filter", help="Substring of logon name, display name or mail."),
    status: str = typer.Option("all", "--status", help="enabled, disabled or all."),
    has_admin: Optional[bool] = typer.Option(
        None, "--has-admin/--no-has-admin", help="Only users with (or without) an admin account."
    ),
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """List users found under the configured search-base OUs."""

    service = _service(config_path)
    caller = _caller(caller_name, sid)
    items = _execute(lambda: service.list_users(caller, domain, name_filter, status, has_admin))
    if not items:
        typer.echo("No users found.")
        return
    for item in items:
        flags = [] if item.enabled else ["disabled"]
        if item.has_admin_account:
            flags.append("admin")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        typer.echo(f"- {item.sam_account_name}: {item.display_name or ''}{suffix}")


@user_app.command("show")
def show_user(
    domain: str = typer.Argument(...),
    sam_account_name: str = typer.Argument(..., help="Logon name of the user."),
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Display a user's details and group memberships."""

    service = _service(config_path)
    caller = _caller(caller_name, sid)
    _print(_execute(lambda: service.get_user_details(caller, domain, sam_account_name)).to_dict())


@user_app.command("create")
def create_user(
    domain: str = typer.Argument(...),
    first_name: str = typer.Argument(..., help="Given name."),
    last_name: str = typer.Argument(..., help="Surname."),
    sam_account_name: str = typer.Argument(..., help="Logon name (at most 20 characters are kept)."),
    group: Optional[List[str]] = typer.Option(None, "--group", help="Optional group to add (repeatable)."),
    admin: bool = typer.Option(False, "--admin", help="Also create the paired -a admin account."),
    expires: Optional[str] = typer.Option(None, "--expires", help="Account expiration date (ISO-8601)."),
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Create a user and, optionally, its admin account."""

    service = _service(config_path)
    caller = _caller(caller_name, sid)
    request = CreateUserRequest(
        domain=domain,
        first_name=first_name,
        last_name=last_name,
        sam_account_name=sam_account_name,
        optional_groups=list(group or []),
        create_admin_account=admin,
        account_expiration_date=_expiry(expires),
    )
    response = _execute(lambda: service.create_user(caller, request))
    _print(response.to_dict())


@user_app.command("update")
def update_user(
    domain: str = typer.Argument(...),
    sam_account_name: str = typer.Argument(...),
    first_name: str = typer.Argument(...),
    last_name: str = typer.Argument(...),
    group: Optional[List[str]] = typer.Option(
        None, "--group", help="Desired optional group (repeatable). Omitted groups are removed."
    ),
    manage_admin: bool = typer.Option(
        False, "--manage-admin/--no-manage-admin", help="Keep (or retire) the paired admin account."
    ),
    expires: Optional[str] = typer.Option(None, "--expires", help="Account expiration date (ISO-8601)."),
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Update names, expiry, optional groups and the admin account of a user."""

    service = _service(config_path)
    caller = _caller(caller_name, sid)
    request = UpdateUserRequest(
        domain=domain,
        sam_account_name=sam_account_name,
        first_name=first_name,
        last_name=last_name,
        optional_groups=list(group or []),
        manage_admin_account=manage_admin,
        account_expiration_date=_expiry(expires),
    )
    outcome = _execute(lambda: service.update_user(caller, request))
    _print({"message": f"User {sam_account_name} updated.", "steps": outcome.to_dict()})


@user_app.command("reset-password")
def reset_password(
    domain: str = typer.Argument(...),
    sam_account_name: str = typer.Argument(...),
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Set a new temporary password that must be changed at next logon."""

    service = _service(config_path)
    caller = _caller(caller_name, sid)
    password = _execute(
        lambda: service.reset_password(caller, UserActionRequest(domain, sam_account_name))
    )
    typer.echo(f"New password for {sam_account_name}: {password}")


@user_app.command("reset-admin-password")
def reset_admin_password(
    domain: str = typer.Argument(...),
    sam_account_name: str = typer.Argument(..., help="Logon name of the standard account."),
    sid: Optional[List[str]] = SidOption,
    caller_name: Optional[str] = CallerOption,
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Reset the password of the paired -a account."""

    service = _service(config_path)
    caller = _caller(caller_name, sid)
    password = _execute(
        lambda: service.reset_admin_password(caller, ResetAdminPasswordRequest(domain, sam_account_name))
    )
    typer.echo(f"New password for {sam_account_name}-a: {password}")


def _state_command(action: str, past: str) -> Callable[..., None]:
    def command(
        domain: str = typer.Argument(...),
        sam_account_name: str = typer.Argument(...),
        sid: Optional[List[str]] = SidOption,
        caller_name: Optional[str] = CallerOption,
        config_path: Optional[Path] = ConfigOption,
    ) -> None:
        service = _service(config_path)
        caller = _caller(caller_name, sid)
        operation = getattr(service, action)
        changed = _execute(lambda: operation(caller, UserActionRequest(domain, sam_account_name)))
        if changed:
            typer.echo(f"{sam_account_name} {past}.")
        else:
            typer.echo(f"{sam_account_name} was already {past}; nothing to do.")

    command.__doc__ = f"{action.capitalize()} a user account."
    return command


user_app.command("unlock")(_state_command("unlock", "unlocked"))
user_app.command("enable")(_state_command("enable", "enabled"))
user_app.command("disable")(_state_command("disable", "disabled"))


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(5000, "--port"),
    debug: bool = typer.Option(False, "--debug"),
    config_path: Optional[Path] = ConfigOption,
) -> None:
    """Run the web API with Flask's development server."""

    from .web import create_app

    config = _load_configuration(config_path)
    create_app(config=config).run(host=host, port=port, debug=debug)


def run():
    app()


if __name__ == "__main__":
    run()
