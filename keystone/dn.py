"""Distinguished-name, SID and timestamp helpers for Active Directory values."""
from __future__ import annotations

import re
import struct
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional

DOMAIN_COMPONENTS_PLACEHOLDER = "{domain-components}"
SAM_ACCOUNT_NAME_MAX_LENGTH = 20

_FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
_FILETIME_NEVER = (0, 0x7FFFFFFFFFFFFFFF)
_DC_PATTERN = re.compile(r"(?:^|,)\s*DC=([^,]+)", re.IGNORECASE)


def domain_components(domain: str) -> str:
    """Convert ``corp.local`` into ``DC=corp,DC=local``."""

    parts = [part for part in (domain or "").strip().strip(".").split(".") if part]
    if not parts:
        raise ValueError("Domain name is empty.")
    return ",".join(f"DC={part}" for part in parts)


def ou_for_domain(ou_format: str, domain: str) -> str:
    """Substitute the ``{domain-components}`` placeholder of an OU path template."""

    pattern = re.compile(re.escape(DOMAIN_COMPONENTS_PLACEHOLDER), re.IGNORECASE)
    return pattern.sub(lambda _: domain_components(domain), ou_format)


def domain_from_dn(distinguished_name: str) -> str:
    return ".".join(_DC_PATTERN.findall(distinguished_name or ""))


def dn_within(distinguished_name: str, container: Optional[str]) -> bool:
    """Return True when ``distinguished_name`` sits at or below ``container``."""

    if not container:
        return True
    dn = _normalize_dn(distinguished_name)
    base = _normalize_dn(container)
    return dn == base or dn.endswith("," + base)


def same_dn(left: Optional[str], right: Optional[str]) -> bool:
    return _normalize_dn(left or "") == _normalize_dn(right or "")


def _normalize_dn(value: str) -> str:
    return ",".join(part.strip() for part in value.split(",")).lower()


def escape_filter_value(value: str) -> str:
    replacements = {
        "\\": "\\5c",
        "*": "\\2a",
        "(": "\\28",
        ")": "\\29",
        "\0": "\\00",
    }
    return "".join(replacements.get(char, char) for char in value)


def escape_rdn_value(value: str) -> str:
    escaped = re.sub(r'([,+"\\<>;=])', r"\\\1", value)
    if escaped.startswith(("#", " ")):
        escaped = "\\" + escaped
    if escaped.endswith(" "):
        escaped = escaped[:-1] + "\\ "
    return escaped


# SIDs ---------------------------------------------------------------------
def format_sid(raw: Any) -> Optional[str]:
    """Return the ``S-1-...`` form of a SID given as text or the binary AD encoding."""

    if raw is None:
        return None
    if isinstance(raw, str):
        return raw.strip() or None
    data = bytes(raw)
    if len(data) < 8:
        return None
    revision = data[0]
    count = data[1]
    authority = int.from_bytes(data[2:8], "big")
    sub_authorities = struct.unpack("<" + "I" * count, data[8 : 8 + 4 * count])
    return "-".join(["S", str(revision), str(authority), *(str(value) for value in sub_authorities)])


def looks_like_sid(value: str) -> bool:
    return bool(re.fullmatch(r"S-1-\d+(-\d+)+", (value or "").strip(), re.IGNORECASE))


def rid_from_sid(sid: str) -> int:
    """Extract the RID (last sub-authority) of a SID, as stored in ``primaryGroupID``."""

    last = (sid or "").rsplit("-", 1)[-1]
    try:
        return int(last)
    except ValueError as exc:
        raise ValueError(f"Invalid SID format: {sid}") from exc


def domain_sid(sid: str) -> str:
    return sid.rsplit("-", 1)[0]


def format_guid(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, (bytes, bytearray)):
        return str(uuid.UUID(bytes_le=bytes(raw)))
    text = str(raw).strip().strip("{}")
    return text.lower() or None


def parse_guid(value: str) -> Optional[str]:
    try:
        return str(uuid.UUID(value.strip().strip("{}")))
    except (ValueError, AttributeError):
        return None


# Timestamps ---------------------------------------------------------------
def filetime_to_datetime(raw: Any) -> Optional[datetime]:
    """Convert an AD FILETIME (or an already parsed value) into an aware datetime."""

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        value = raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
        if value.year <= 1601 or value.year >= 9999:
            return None
        return value.astimezone(timezone.utc)
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("ascii")
    if isinstance(raw, str):
        stripped = raw.strip()
        if not stripped.lstrip("-").isdigit():
            return parse_datetime(stripped)
        raw = int(stripped)
    ticks = int(raw)
    if ticks in _FILETIME_NEVER or ticks < 0:
        return None
    return _FILETIME_EPOCH + timedelta(microseconds=ticks // 10)


def datetime_to_filetime(value: Optional[datetime]) -> int:
    if value is None:
        return 0
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value.astimezone(timezone.utc) - _FILETIME_EPOCH
    return (delta.days * 86400 + delta.seconds) * 10_000_000 + delta.microseconds * 10


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


# Names --------------------------------------------------------------------
def safe_sam(proposed: str) -> str:
    """Trim a proposed sAMAccountName to the legacy 20 character limit."""

    value = (proposed or "").strip()[:SAM_ACCOUNT_NAME_MAX_LENGTH].strip()
    if not value:
        raise ValueError("Proposed sAMAccountName is empty after normalization.")
    return value


def admin_sam_for(sam_account_name: str) -> str:
    return safe_sam(f"{sam_account_name}-a")


def normalize_names(values: Optional[Iterable[str]]) -> List[str]:
    """Trim, drop blanks and de-duplicate (case-insensitively) a list of names."""

    seen: set[str] = set()
    result: List[str] = []
    for value in values or []:
        cleaned = str(value or "").strip()
        if cleaned and cleaned.lower() not in seen:
            seen.add(cleaned.lower())
            result.append(cleaned)
    return result


__all__ = [
    "DOMAIN_COMPONENTS_PLACEHOLDER",
    "SAM_ACCOUNT_NAME_MAX_LENGTH",
    "admin_sam_for",
    "datetime_to_filetime",
    "dn_within",
    "domain_components",
    "domain_from_dn",
    "domain_sid",
    "escape_filter_value",
    "escape_rdn_value",
    "filetime_to_datetime",
    "format_guid",
    "format_sid",
    "looks_like_sid",
    "normalize_names",
    "ou_for_domain",
    "parse_datetime",
    "parse_guid",
    "rid_from_sid",
    "safe_sam",
    "same_dn",
]
