# pppoe_manager/domain.py
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional


def utcnow_naive() -> datetime:
    """DB stores UTC-naive datetimes."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =========================================================
# Closed value sets
# =========================================================
class RouterStatus(enum.Enum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    ERROR = "ERROR"


class AccountStatus(enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    DISABLED = "DISABLED"


class AccountSource(enum.Enum):
    MANUAL = "MANUAL"
    IMPORTED = "IMPORTED"


class AdjustmentType(enum.Enum):
    MANUAL_EDIT = "MANUAL_EDIT"
    RECHARGE = "RECHARGE"
    IMPORT_SET = "IMPORT_SET"


class ErrorKind(enum.Enum):
    TIMEOUT = "TIMEOUT"
    CONNECTION_REFUSED = "CONNECTION_REFUSED"
    AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TIMEOUT, ErrorKind.CONNECTION_REFUSED, ErrorKind.CANCELLED)


class LogAction:
    """Audit log action tags (LogEntry.action)."""

    # expiry loop
    AUTO_DISABLED = "PPPOE_USER_AUTO_DISABLED"
    AUTO_DISABLE_FAILED = "PPPOE_USER_AUTO_DISABLE_FAILED"
    AUTO_DISABLE_ERROR = "PPPOE_USER_AUTO_DISABLE_ERROR"
    SCHEDULER_ERROR = "EXPIRATION_SCHEDULER_ERROR"

    # account operations
    USER_CREATED = "PPPOE_USER_CREATED"
    USER_CREATE_FAILED = "PPPOE_USER_CREATE_FAILED"
    USER_ENABLED = "PPPOE_USER_ENABLED"
    USER_DISABLED = "PPPOE_USER_DISABLED"
    USER_TOGGLE_FAILED = "PPPOE_USER_TOGGLE_FAILED"
    USER_RECHARGED = "PPPOE_USER_RECHARGED"
    USER_ENABLE_FAILED = "PPPOE_USER_ENABLE_FAILED"
    USER_EXPIRY_UPDATED = "PPPOE_USER_EXPIRY_UPDATED"
    USER_PASSWORD_UPDATED = "PPPOE_USER_PASSWORD_UPDATED"
    USER_PASSWORD_UPDATE_FAILED = "PPPOE_USER_PASSWORD_UPDATE_FAILED"

    # reconciliation
    USER_IMPORTED = "PPPOE_USER_IMPORTED"
    USER_IMPORT_FAILED = "PPPOE_USER_IMPORT_FAILED"
    USER_RESYNCED = "PPPOE_USER_RESYNCED"
    USER_RESYNC_FAILED = "PPPOE_USER_RESYNC_FAILED"
    IMPORT_SCAN = "ROUTER_IMPORT_USERS"
    IMPORT_COMPLETED = "ROUTER_IMPORT_USERS_COMPLETED"
    RESYNC = "ROUTER_RESYNC"
    RESYNC_FAILED = "ROUTER_RESYNC_FAILED"

    # router liveness
    CONNECTION_SUCCESS = "ROUTER_CONNECTION_SUCCESS"
    CONNECTION_FAILED = "ROUTER_CONNECTION_FAILED"


# =========================================================
# Values handed to / returned by the router agent
# =========================================================
@dataclass(frozen=True)
class RouterDescriptor:
    """Connection identity of one router. Built per operation, never cached."""

    address: str
    username: str
    password: str
    port: int = 8728
    id: Optional[int] = None
    name: str = ""
    use_tls: bool = False

    @classmethod
    def from_router(cls, router) -> "RouterDescriptor":
        return cls(
            id=router.id,
            name=router.friendly_name or "",
            address=(router.address or "").strip(),
            port=int(router.port or 8728),
            username=(router.api_username or "").strip(),
            password=router.api_password or "",
            use_tls=bool(getattr(router, "use_tls", False)),
        )

    def missing_fields(self) -> list[str]:
        missing: list[str] = []
        if not self.address:
            missing.append("address")
        if not self.username:
            missing.append("api username")
        if not self.password:
            missing.append("api password")
        return missing

    def __repr__(self) -> str:
        # never print credentials
        return f"<RouterDescriptor id={self.id} address={self.address}:{self.port}>"


@dataclass(frozen=True)
class RateLimit:
    download_kbps: int
    upload_kbps: int

    def __post_init__(self) -> None:
        if self.download_kbps <= 0 or self.upload_kbps <= 0:
            raise ValueError("Rate limit speeds must be positive (Kbps)")


@dataclass(frozen=True)
class RemoteAccount:
    """One /ppp/secret row as the router reports it right now."""

    name: str
    password: str = ""
    service: str = ""
    profile: str = ""
    caller_id: str = ""
    disabled: bool = False
    comment: str = ""
    secret_id: Optional[str] = None

    @property
    def status(self) -> AccountStatus:
        return AccountStatus.DISABLED if self.disabled else AccountStatus.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.name,
            "password": self.password,
            "status": self.status.value,
            "service": self.service,
            "profile": self.profile,
            "callerId": self.caller_id,
            "comment": self.comment,
        }


@dataclass
class RouterResult:
    success: bool
    error: Optional[str] = None
    kind: Optional[ErrorKind] = None
    suggestions: list[str] = field(default_factory=list)
    message: str = ""
    data: Any = None

    @classmethod
    def ok(cls, message: str = "", data: Any = None) -> "RouterResult":
        return cls(success=True, message=message, data=data)

    @classmethod
    def failed(cls, error: str, kind: ErrorKind, suggestions: list[str] | None = None) -> "RouterResult":
        return cls(success=False, error=error, kind=kind, suggestions=list(suggestions or []))

    @property
    def retryable(self) -> bool:
        return bool(self.kind and self.kind.retryable)

    def describe(self) -> str:
        if self.success:
            return self.message or "ok"
        kind = self.kind.value if self.kind else ErrorKind.UNKNOWN.value
        return f"[{kind}] {self.error}"

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.success}
        if self.message:
            out["message"] = self.message
        if not self.success:
            out["error"] = self.error
            out["kind"] = self.kind.value if self.kind else ErrorKind.UNKNOWN.value
            if self.suggestions:
                out["suggestions"] = list(self.suggestions)
        return out
