# pppoe_manager/services/routeros_commands.py
"""
Translation between domain intents and RouterOS API arguments.

Everything the router sends back is a string. This module is the only place
that reads raw rows; callers get RemoteAccount values and typed flags.
"""
from __future__ import annotations

from typing import Any, Iterable, Optional

from ..domain import RateLimit, RemoteAccount

SECRET_PATH = "/ppp/secret"
IDENTITY_PATH = "/system/identity"

PPPOE_SERVICE = "pppoe"
DEFAULT_PROFILE = "default"

_WIRE_FALSE = {"false", "no"}
_WIRE_TRUE = {"true", "yes"}


# ---------------------------------------------------------------------
# Wire booleans
# ---------------------------------------------------------------------
def wire_disabled(value: Any) -> bool:
    """
    Parse the `disabled` flag of a secret.

    Only an explicit "false"/"no" counts as enabled. Missing or garbage
    values are treated as disabled.
    """
    if isinstance(value, bool):
        return value
    raw = str(value if value is not None else "").strip().lower()
    return raw not in _WIRE_FALSE


def wire_flag(value: Any) -> Optional[bool]:
    """Strict parse: True/False for known spellings, None otherwise."""
    raw = str(value if value is not None else "").strip().lower()
    if raw in _WIRE_TRUE:
        return True
    if raw in _WIRE_FALSE:
        return False
    return None


def to_wire_bool(flag: bool) -> str:
    return "yes" if flag else "no"


def _text(row: dict[str, Any], key: str) -> str:
    value = row.get(key)
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


# ---------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------
def secret_id(row: dict[str, Any]) -> Optional[str]:
    # routeros_api returns ".id" or "id" depending on version/structure
    sid = row.get(".id") or row.get("id")
    return str(sid) if sid else None


def parse_secret(row: dict[str, Any]) -> RemoteAccount:
    return RemoteAccount(
        secret_id=secret_id(row),
        name=_text(row, "name").strip(),
        password=_text(row, "password"),
        service=_text(row, "service"),
        profile=_text(row, "profile"),
        caller_id=_text(row, "caller-id"),
        disabled=wire_disabled(row.get("disabled")),
        comment=_text(row, "comment"),
    )


def parse_secrets(rows: Iterable[dict[str, Any]] | None) -> list[RemoteAccount]:
    out: list[RemoteAccount] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        account = parse_secret(row)
        if account.name:
            out.append(account)
    return out


def parse_identity(rows: Any) -> str:
    if isinstance(rows, dict):
        rows = [rows]
    for row in rows or []:
        if isinstance(row, dict):
            name = _text(row, "name").strip()
            if name:
                return name
    return "Unknown"


# ---------------------------------------------------------------------
# Command payloads
# ---------------------------------------------------------------------
def format_rate_limit(rate: RateLimit) -> str:
    # RouterOS order is upload/download (tx/rx from the router's view of the client)
    return f"{rate.upload_kbps}k/{rate.download_kbps}k"


def add_secret_payload(username: str, password: str, rate_limit: Optional[RateLimit] = None) -> dict[str, str]:
    payload = {
        "name": username,
        "password": password,
        "service": PPPOE_SERVICE,
    }
    if rate_limit is not None:
        encoded = format_rate_limit(rate_limit)
        payload["limit-at"] = encoded
        payload["max-limit"] = encoded
    else:
        payload["profile"] = DEFAULT_PROFILE
    return payload


def set_disabled_payload(sid: str, disabled: bool) -> dict[str, str]:
    return {"id": sid, "disabled": to_wire_bool(disabled)}


def set_password_payload(sid: str, password: str) -> dict[str, str]:
    return {"id": sid, "password": password}
