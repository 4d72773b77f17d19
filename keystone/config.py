"""Configuration loading utilities for the KeyStone directory toolkit."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import shutil

import yaml


DEFAULT_CONFIG_PATH = Path("config/settings.yaml")
DEFAULT_TEMPLATE_PATH = Path("config/settings.example.yaml")
ENV_CONFIG_PATH = "KEYSTONE_CONFIG"
ENV_PREFIX = "KEYSTONE_"
ENV_CALLER_SIDS = "KEYSTONE_CALLER_SIDS"
REDACTED = "********"
RETIREMENT_POLICIES = ("disable", "delete")


@dataclass
class LDAPConfig:
    """Settings required to bind to each managed domain via LDAP."""

    user_dn: str
    password: str
    server_uri: str = "ldaps://{domain}"
    domain_controllers: Dict[str, str] = field(default_factory=dict)
    global_catalog_uri: str = "ldap://{forest_root}:3268"
    use_ssl: bool = True
    connect_timeout: int = 10
    receive_timeout: int = 30
    mock_data_file: Optional[Path] = None

    @property
    def is_mock(self) -> bool:
        return self.server_uri.startswith("mock://")

    def uri_for(self, domain: str) -> str:
        for name, uri in self.domain_controllers.items():
            if name.lower() == domain.lower():
                return uri
        return self.server_uri.replace("{domain}", domain)


@dataclass
class AccessControlConfig:
    """Directory groups that grant access to KeyStone features."""

    general_access_groups: tuple[str, ...] = ()
    high_privilege_groups: tuple[str, ...] = ()


@dataclass
class ProvisioningConfig:
    """Rules and locations for creating and managing accounts."""

    default_user_ou_format: str = "OU=Users,{domain-components}"
    admin_user_ou_format: str = "OU=Admins,{domain-components}"
    search_base_ous: tuple[str, ...] = ()
    optional_groups_general: tuple[str, ...] = ()
    optional_groups_high_privilege: tuple[str, ...] = ()
    admin_group: Optional[str] = None
    default_group: str = "Domain Users"
    admin_account_retirement: str = "disable"
    admin_account_lifetime_days: int = 30
    password_length: int = 10
    primary_group_attempts: int = 4
    primary_group_retry_delay: float = 0.6

    @property
    def optional_groups(self) -> tuple[str, ...]:
        """Every group the reconciler is allowed to manage."""

        seen: set[str] = set()
        groups = []
        for group in (*self.optional_groups_general, *self.optional_groups_high_privilege):
            if group.lower() not in seen:
                seen.add(group.lower())
                groups.append(group)
        return tuple(groups)


@dataclass
class AuthConfig:
    """How the web layer learns who the caller is."""

    trust_proxy_headers: bool = False
    user_header: str = "X-Remote-User"
    group_sids_header: str = "X-Remote-Group-Sids"


@dataclass
class WebConfig:
    secret_key: str = "keystone-secret"


@dataclass
class AppConfig:
    """Aggregate configuration for the application."""

    forest_root_domain: str
    domains: tuple[str, ...]
    ldap: LDAPConfig
    access_control: AccessControlConfig = field(default_factory=AccessControlConfig)
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    web: WebConfig = field(default_factory=WebConfig)

    def is_managed_domain(self, domain: str) -> bool:
        return any(candidate.lower() == (domain or "").lower() for candidate in self.domains)


class ConfigurationError(RuntimeError):
    """Raised when the configuration file or environment variables are invalid."""


def _load_from_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(
            f"Configuration file '{path}' does not exist. "
            "Create it from 'config/settings.example.yaml' or set environment variables."
        )
    with path.open("r", encoding="utf-8") as file:
        return yaml.safe_load(file) or {}


def _apply_environment_overrides(config_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Override configuration values with environment variables."""

    overrides: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX) or key in (ENV_CONFIG_PATH, ENV_CALLER_SIDS):
            continue
        path = key[len(ENV_PREFIX) :].lower().split("__")
        node = overrides
        for part in path[:-1]:
            node = node.setdefault(part, {})
        node[path[-1]] = value

    if overrides:
        config_dict = _deep_merge(config_dict, overrides)
    return config_dict


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            result[key] = _deep_merge(base[key], value)
        else:
            result[key] = value
    return result


def _resolve_config_path(path: Optional[Path] = None) -> Path:
    if path is not None:
        return Path(path)
    env_path = os.environ.get(ENV_CONFIG_PATH)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def ensure_default_config(
    path: Optional[Path] = None, template_path: Optional[Path] = None
) -> Path:
    """Ensure a configuration file exists, copying from the example if needed."""

    target_path = _resolve_config_path(path)
    if target_path.exists():
        return target_path

    template = Path(template_path) if template_path is not None else DEFAULT_TEMPLATE_PATH
    if not template.exists():
        raise ConfigurationError(
            "Default configuration template not found. "
            "Ensure 'config/settings.example.yaml' is present or specify a template."
        )

    target_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy(template, target_path)
    return target_path


def _load_config_dict(path: Optional[Path] = None) -> Dict[str, Any]:
    resolved_path = _resolve_config_path(path)
    if resolved_path == DEFAULT_CONFIG_PATH:
        ensure_default_config(resolved_path)

    config_dict = _load_from_file(resolved_path)
    return _apply_environment_overrides(config_dict)


def _get_required(config_dict: Dict[str, Any], key: str) -> Any:
    try:
        value = config_dict[key]
    except KeyError as exc:
        raise ConfigurationError(f"Missing required configuration section: '{key}'.") from exc
    if value in (None, "", [], {}):
        raise ConfigurationError(f"Configuration section '{key}' must not be empty.")
    return value


def _normalize_sequence(value: Any) -> Iterable[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return value
    if isinstance(value, str):
        return value.split(",")
    return [value]


def _string_tuple(value: Any) -> tuple[str, ...]:
    return tuple(filter(None, [str(entry).strip() for entry in _normalize_sequence(value)]))


def _to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        return int(value.strip())
    return int(value)


def _to_float(value: Any) -> float:
    if isinstance(value, str):
        return float(value.strip())
    return float(value)


def _optional_path(raw: Any) -> Optional[Path]:
    """Convert a raw config value to ``Path`` if set, otherwise ``None``."""

    if raw is None:
        return None
    if isinstance(raw, Path):
        return raw
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped:
            return None
        return Path(stripped)
    return Path(raw)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load application configuration from disk and environment variables."""

    return config_from_dict(_load_config_dict(path))


def config_from_dict(config_dict: Dict[str, Any]) -> AppConfig:
    """Build an :class:`AppConfig` from primitive values (as read from YAML)."""

    forest_root = str(_get_required(config_dict, "forest_root_domain")).strip()
    domains = _string_tuple(_get_required(config_dict, "domains"))
    ldap_section = _get_required(config_dict, "ldap")

    try:
        controllers = ldap_section.get("domain_controllers") or {}
        ldap_config = LDAPConfig(
            user_dn=str(ldap_section["user_dn"]),
            password=str(ldap_section["password"]),
            server_uri=str(ldap_section.get("server_uri", "ldaps://{domain}")),
            domain_controllers={str(key): str(value) for key, value in controllers.items()},
            global_catalog_uri=str(
                ldap_section.get("global_catalog_uri", "ldap://{forest_root}:3268")
            ),
            use_ssl=_to_bool(ldap_section.get("use_ssl", True)),
            connect_timeout=_to_int(ldap_section.get("connect_timeout", 10)),
            receive_timeout=_to_int(ldap_section.get("receive_timeout", 30)),
            mock_data_file=_optional_path(ldap_section.get("mock_data_file")),
        )
    except KeyError as exc:
        raise ConfigurationError(f"Missing LDAP configuration key: {exc}.") from exc
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid LDAP configuration: {exc}.") from exc

    access_section = config_dict.get("access_control") or {}
    access_config = AccessControlConfig(
        general_access_groups=_string_tuple(access_section.get("general_access_groups")),
        high_privilege_groups=_string_tuple(access_section.get("high_privilege_groups")),
    )

    provisioning_section = config_dict.get("provisioning") or {}
    defaults = ProvisioningConfig()
    try:
        provisioning_config = ProvisioningConfig(
            default_user_ou_format=str(
                provisioning_section.get("default_user_ou_format", defaults.default_user_ou_format)
            ),
            admin_user_ou_format=str(
                provisioning_section.get("admin_user_ou_format", defaults.admin_user_ou_format)
            ),
            search_base_ous=_string_tuple(provisioning_section.get("search_base_ous")),
            optional_groups_general=_string_tuple(
                provisioning_section.get("optional_groups_general")
            ),
            optional_groups_high_privilege=_string_tuple(
                provisioning_section.get("optional_groups_high_privilege")
            ),
            admin_group=_optional_str(provisioning_section.get("admin_group")),
            default_group=_optional_str(provisioning_section.get("default_group"))
            or defaults.default_group,
            admin_account_retirement=str(
                provisioning_section.get("admin_account_retirement", defaults.admin_account_retirement)
            )
            .strip()
            .lower(),
            admin_account_lifetime_days=_to_int(
                provisioning_section.get(
                    "admin_account_lifetime_days", defaults.admin_account_lifetime_days
                )
            ),
            password_length=_to_int(
                provisioning_section.get("password_length", defaults.password_length)
            ),
            primary_group_attempts=_to_int(
                provisioning_section.get("primary_group_attempts", defaults.primary_group_attempts)
            ),
            primary_group_retry_delay=_to_float(
                provisioning_section.get(
                    "primary_group_retry_delay", defaults.primary_group_retry_delay
                )
            ),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid provisioning configuration: {exc}.") from exc

    if provisioning_config.admin_account_retirement not in RETIREMENT_POLICIES:
        raise ConfigurationError(
            "provisioning.admin_account_retirement must be one of "
            + ", ".join(RETIREMENT_POLICIES)
            + "."
        )
    if provisioning_config.primary_group_attempts < 1:
        raise ConfigurationError("provisioning.primary_group_attempts must be at least 1.")

    auth_section = config_dict.get("auth") or {}
    default_auth = AuthConfig()
    auth_config = AuthConfig(
        trust_proxy_headers=_to_bool(auth_section.get("trust_proxy_headers", False)),
        user_header=_optional_str(auth_section.get("user_header")) or default_auth.user_header,
        group_sids_header=_optional_str(auth_section.get("group_sids_header"))
        or default_auth.group_sids_header,
    )

    web_section = config_dict.get("web") or {}
    web_config = WebConfig(
        secret_key=_optional_str(web_section.get("secret_key")) or WebConfig().secret_key,
    )

    return AppConfig(
        forest_root_domain=forest_root,
        domains=domains,
        ldap=ldap_config,
        access_control=access_config,
        provisioning=provisioning_config,
        auth=auth_config,
        web=web_config,
    )


def config_to_dict(config: AppConfig, redact: bool = False) -> Dict[str, Any]:
    """Serialize an :class:`AppConfig` back to primitive types."""

    return {
        "forest_root_domain": config.forest_root_domain,
        "domains": list(config.domains),
        "ldap": {
            "server_uri": config.ldap.server_uri,
            "domain_controllers": dict(config.ldap.domain_controllers),
            "global_catalog_uri": config.ldap.global_catalog_uri,
            "user_dn": config.ldap.user_dn,
            "password": REDACTED if redact else config.ldap.password,
            "use_ssl": config.ldap.use_ssl,
            "connect_timeout": config.ldap.connect_timeout,
            "receive_timeout": config.ldap.receive_timeout,
            **(
                {"mock_data_file": str(config.ldap.mock_data_file)}
                if config.ldap.mock_data_file
                else {}
            ),
        },
        "access_control": {
            "general_access_groups": list(config.access_control.general_access_groups),
            "high_privilege_groups": list(config.access_control.high_privilege_groups),
        },
        "provisioning": {
            "default_user_ou_format": config.provisioning.default_user_ou_format,
            "admin_user_ou_format": config.provisioning.admin_user_ou_format,
            "search_base_ous": list(config.provisioning.search_base_ous),
            "optional_groups_general": list(config.provisioning.optional_groups_general),
            "optional_groups_high_privilege": list(
                config.provisioning.optional_groups_high_privilege
            ),
            "admin_group": config.provisioning.admin_group or "",
            "default_group": config.provisioning.default_group,
            "admin_account_retirement": config.provisioning.admin_account_retirement,
            "admin_account_lifetime_days": config.provisioning.admin_account_lifetime_days,
            "password_length": config.provisioning.password_length,
            "primary_group_attempts": config.provisioning.primary_group_attempts,
            "primary_group_retry_delay": config.provisioning.primary_group_retry_delay,
        },
        "auth": {
            "trust_proxy_headers": config.auth.trust_proxy_headers,
            "user_header": config.auth.user_header,
            "group_sids_header": config.auth.group_sids_header,
        },
        "web": {
            "secret_key": REDACTED if redact else config.web.secret_key,
        },
    }


__all__ = [
    "AccessControlConfig",
    "AppConfig",
    "AuthConfig",
    "ConfigurationError",
    "LDAPConfig",
    "ProvisioningConfig",
    "WebConfig",
    "config_from_dict",
    "config_to_dict",
    "ensure_default_config",
    "load_config",
]
