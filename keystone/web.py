"""Flask JSON API exposing the account operations."""
from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request, session
from werkzeug.exceptions import HTTPException

from .config import AppConfig, load_config
from .errors import DirectoryOperationFailed, KeystoneError, NotFound, PermissionDenied
from .models import (
    Caller,
    CreateUserRequest,
    ResetAdminPasswordRequest,
    UpdateUserRequest,
    UserActionRequest,
)
from .provisioning import AccountService

_AUTH_EXEMPT_ENDPOINTS = {"healthcheck"}
_SID_SEPARATOR = re.compile(r"[,;\s]+")


def create_app(
    config_path: Optional[Path | str] = None,
    service: Optional[AccountService] = None,
    config: Optional[AppConfig] = None,
) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    if config is None:
        config = service.config if service is not None else load_config(resolved_config_path)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.web.secret_key
    app.config["CONFIG_PATH"] = resolved_config_path
    app.config["JSON_SORT_KEYS"] = False
    app.extensions["keystone"] = service or AccountService(config)

    register_error_handlers(app)
    register_routes(app)
    return app


def _service(app: Flask) -> AccountService:
    return app.extensions["keystone"]


def _current_caller(app: Flask) -> Optional[Caller]:
    auth = _service(app).config.auth
    if auth.trust_proxy_headers:
        name = request.headers.get(auth.user_header)
        if name:
            raw_sids = request.headers.get(auth.group_sids_header, "")
            return Caller.from_claims(name, _SID_SEPARATOR.split(raw_sids))

    current_user = session.get("user")
    if current_user:
        return Caller.from_claims(
            current_user.get("name"),
            current_user.get("group_sids") or current_user.get("groups") or [],
        )
    return None


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValueError("A JSON object body is required.")
    return data


def _optional_flag(raw: Optional[str]) -> Optional[bool]:
    if raw is None or raw.strip() == "":
        return None
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes"}:
        return True
    if lowered in {"0", "false", "no"}:
        return False
    raise ValueError(f"Invalid boolean value '{raw}'.")


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(PermissionDenied)
    def _permission_denied(exc: PermissionDenied) -> Any:
        app.logger.warning("Permission denied: %s", exc)
        return jsonify({"message": str(exc)}), 403

    @app.errorhandler(NotFound)
    def _not_found(exc: NotFound) -> Any:
        return jsonify({"message": str(exc)}), 404

    @app.errorhandler(DirectoryOperationFailed)
    def _directory_failure(exc: DirectoryOperationFailed) -> Any:
        app.logger.error("Directory operation failed: %s", exc)
        return jsonify({"message": exc.message, "detail": exc.detail}), 400

    @app.errorhandler(ValueError)
    def _bad_request(exc: ValueError) -> Any:
        return jsonify({"message": str(exc)}), 400

    @app.errorhandler(Exception)
    def _unexpected(exc: Exception) -> Any:
        if isinstance(exc, HTTPException):
            return exc
        app.logger.exception("Unhandled error while serving %s: %s", request.path, exc)
        payload = {"message": "An unexpected error occurred."}
        if isinstance(exc, KeystoneError):
            payload["detail"] = str(exc)
        return jsonify(payload), 500


def register_routes(app: Flask) -> None:
    """Attach all API routes to the provided Flask app."""

    @app.before_request
    def _enforce_authentication() -> Optional[Any]:
        g.caller = _current_caller(app)
        if (request.endpoint or "") in _AUTH_EXEMPT_ENDPOINTS or g.caller is not None:
            return None
        return jsonify({"message": "Authentication required."}), 401

    @app.get("/api/healthcheck", endpoint="healthcheck")
    def healthcheck() -> Any:
        return jsonify({"status": "ok"})

    @app.get("/auth/me")
    def auth_me() -> Any:
        try:
            return jsonify(_service(app).describe_caller(g.caller))
        except PermissionDenied as exc:
            app.logger.info("Caller %s has no access: %s", g.caller.name, exc)
            return jsonify({"message": "Access denied."}), 401

    @app.get("/api/config/settings")
    def api_settings() -> Any:
        return jsonify(_service(app).get_settings(g.caller))

    @app.get("/api/users/list")
    def api_list_users() -> Any:
        domain = (request.args.get("domain") or "").strip()
        if not domain:
            raise ValueError("'domain' is required.")
        items = _service(app).list_users(
            g.caller,
            domain,
            name_filter=request.args.get("nameFilter") or None,
            status_filter=request.args.get("statusFilter") or None,
            has_admin_account=_optional_flag(request.args.get("hasAdminAccount")),
        )
        return jsonify([item.to_dict() for item in items])

    @app.get("/api/users/details/<domain>/<sam_account_name>")
    def api_user_details(domain: str, sam_account_name: str) -> Any:
        return jsonify(_service(app).get_user_details(g.caller, domain, sam_account_name).to_dict())

    @app.post("/api/users/create")
    def api_create_user() -> Any:
        create_request = CreateUserRequest.from_dict(_json_body())
        response = _service(app).create_user(g.caller, create_request)
        app.logger.info("%s created %s", g.caller.name, create_request.sam_account_name)
        return jsonify(response.to_dict())

    @app.put("/api/users/update")
    def api_update_user() -> Any:
        update_request = UpdateUserRequest.from_dict(_json_body())
        outcome = _service(app).update_user(g.caller, update_request)
        return jsonify(
            {
                "message": f"User {update_request.sam_account_name} updated.",
                "steps": outcome.to_dict(),
            }
        )

    @app.post("/api/users/reset-password")
    def api_reset_password() -> Any:
        action = UserActionRequest.from_dict(_json_body())
        password = _service(app).reset_password(g.caller, action)
        return jsonify(
            {
                "message": f"Password for {action.sam_account_name} has been reset.",
                "newPassword": password,
            }
        )

    @app.post("/api/users/reset-admin-password")
    def api_reset_admin_password() -> Any:
        action = ResetAdminPasswordRequest.from_dict(_json_body())
        password = _service(app).reset_admin_password(g.caller, action)
        return jsonify(
            {
                "message": f"Password for {action.sam_account_name}-a has been reset.",
                "newPassword": password,
            }
        )

    def _state_route(action: str, past: str) -> None:
        def handler() -> Any:
            target = UserActionRequest.from_dict(_json_body())
            changed = getattr(_service(app), action)(g.caller, target)
            if changed:
                message = f"User {target.sam_account_name} {past}."
            else:
                message = f"User {target.sam_account_name} was already {past}."
            return jsonify({"message": message, "changed": changed})

        app.add_url_rule(f"/api/users/{action}", f"api_{action}", handler, methods=["POST"])

    _state_route("unlock", "unlocked")
    _state_route("disable", "disabled")
    _state_route("enable", "enabled")


__all__ = ["create_app", "register_error_handlers", "register_routes"]
