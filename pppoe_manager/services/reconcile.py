# pppoe_manager/services/reconcile.py
"""
Three-way diff between a router's live secrets and the local accounts of
that same router.

Pure functions only: no database, no router I/O. The plan never deletes a
local account and never touches expiry, provenance or recharge history.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

from ..domain import AccountSource, AccountStatus, RemoteAccount

log = logging.getLogger("pppoe.reconcile")

MISSING_ON_ROUTER = "missing on router"
EXPIRED_BUT_ENABLED = "expired locally but enabled on router"


@dataclass(frozen=True)
class LocalAccount:
    """Snapshot of the fields reconciliation reads from a local account."""

    id: int
    username: str
    status: AccountStatus
    password: Optional[str] = None
    expiry_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, user) -> "LocalAccount":
        return cls(
            id=user.id,
            username=user.username,
            status=user.status,
            password=user.password,
            expiry_at=user.expiry_at,
        )


@dataclass(frozen=True)
class ImportCandidate:
    """A router secret with no local counterpart yet."""

    username: str
    password: str
    status: AccountStatus
    service: str = ""
    profile: str = ""
    caller_id: str = ""
    comment: str = ""
    source: AccountSource = AccountSource.IMPORTED

    @classmethod
    def from_remote(cls, remote: RemoteAccount) -> "ImportCandidate":
        return cls(
            username=remote.name,
            password=remote.password,
            status=remote.status,
            service=remote.service,
            profile=remote.profile,
            caller_id=remote.caller_id,
            comment=remote.comment,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "password": self.password,
            "status": self.status.value,
            "service": self.service,
            "profile": self.profile,
            "callerId": self.caller_id,
            "comment": self.comment,
        }


@dataclass(frozen=True)
class AccountUpdate:
    account_id: int
    username: str
    status: Optional[AccountStatus] = None
    password: Optional[str] = None

    @property
    def fields(self) -> list[str]:
        return [name for name in ("status", "password") if getattr(self, name) is not None]


@dataclass(frozen=True)
class Discrepancy:
    username: str
    reason: str
    account_id: Optional[int] = None


@dataclass
class ReconcilePlan:
    new: list[ImportCandidate] = field(default_factory=list)
    updates: list[AccountUpdate] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    discrepancies: list[Discrepancy] = field(default_factory=list)
    remote_total: int = 0

    @property
    def has_changes(self) -> bool:
        return bool(self.new or self.updates)

    def summary(self) -> dict[str, int]:
        return {
            "remote": self.remote_total,
            "new": len(self.new),
            "updated": len(self.updates),
            "unchanged": len(self.unchanged),
            "discrepancies": len(self.discrepancies),
        }


def reconcile_status(local: AccountStatus, remote_disabled: bool) -> tuple[AccountStatus, Optional[str]]:
    """
    Status the local account should have given the router's disabled flag.

    Returns (status, discrepancy_reason). EXPIRED is only ever left or
    entered by the expiry loop and recharge, so it is never rewritten here.
    """
    if remote_disabled:
        if local == AccountStatus.ACTIVE:
            return AccountStatus.DISABLED, None
        return local, None

    if local == AccountStatus.DISABLED:
        return AccountStatus.ACTIVE, None
    if local == AccountStatus.EXPIRED:
        return local, EXPIRED_BUT_ENABLED
    return local, None


def plan_reconciliation(
    remote: Iterable[RemoteAccount],
    local: Iterable[LocalAccount],
) -> ReconcilePlan:
    plan = ReconcilePlan()

    local_by_name: dict[str, LocalAccount] = {}
    for account in local:
        local_by_name.setdefault(account.username, account)

    seen: set[str] = set()
    for r in remote:
        plan.remote_total += 1
        if r.name in seen:
            log.warning("Duplicate secret name on router ignored | username=%s", r.name)
            continue
        seen.add(r.name)

        existing = local_by_name.get(r.name)
        if existing is None:
            plan.new.append(ImportCandidate.from_remote(r))
            continue

        status, reason = reconcile_status(existing.status, r.disabled)
        if reason:
            plan.discrepancies.append(Discrepancy(username=r.name, reason=reason, account_id=existing.id))

        password = r.password if r.password and r.password != existing.password else None

        if status != existing.status or password is not None:
            plan.updates.append(
                AccountUpdate(
                    account_id=existing.id,
                    username=existing.username,
                    status=status if status != existing.status else None,
                    password=password,
                )
            )
        else:
            plan.unchanged.append(existing.username)

    for username, account in local_by_name.items():
        if username not in seen:
            plan.discrepancies.append(Discrepancy(username=username, reason=MISSING_ON_ROUTER, account_id=account.id))

    return plan
