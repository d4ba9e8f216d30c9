# pppoe_manager/services/sync.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ..domain import (
    AccountSource,
    AccountStatus,
    AdjustmentType,
    ErrorKind,
    LogAction,
    RouterDescriptor,
    RouterResult,
    RouterStatus,
    utcnow_naive,
)
from ..extensions import db
from ..models import PPPoEUser
from .audit import log_action, log_action_now, record_expiry_adjustment
from .reconcile import LocalAccount, ReconcilePlan, plan_reconciliation

log = logging.getLogger("pppoe.sync")


# =========================================================
# Inputs / outputs
# =========================================================
@dataclass(frozen=True)
class ImportSelection:
    """Operator decision for one discovered secret (import step 2)."""

    username: str
    status: AccountStatus = AccountStatus.ACTIVE
    password: Optional[str] = None
    expiry_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImportSelection":
        raw_status = str(data.get("status") or AccountStatus.ACTIVE.value).strip().upper()
        try:
            status = AccountStatus[raw_status]
        except KeyError:
            raise ValueError(f"Invalid status: {raw_status}")

        expiry_raw = data.get("expiryAt") or data.get("expiry_at")
        expiry_at = None
        if isinstance(expiry_raw, datetime):
            expiry_at = expiry_raw
        elif expiry_raw:
            expiry_at = parse_expiry(str(expiry_raw))

        return cls(
            username=str(data.get("username") or "").strip(),
            status=status,
            password=data.get("password") or None,
            expiry_at=expiry_at,
        )


@dataclass
class SyncResult:
    success: bool
    router_id: Optional[int] = None
    failure: Optional[RouterResult] = None
    plan: Optional[ReconcilePlan] = None
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            out = self.failure.to_dict() if self.failure else {"success": False}
            out["routerId"] = self.router_id
            return out
        out: dict[str, Any] = {
            "success": True,
            "routerId": self.router_id,
            "added": list(self.added),
            "updated": list(self.updated),
            "skipped": list(self.skipped),
        }
        if self.plan is not None:
            out["summary"] = self.plan.summary()
            out["discrepancies"] = [
                {"username": d.username, "reason": d.reason, "accountId": d.account_id}
                for d in self.plan.discrepancies
            ]
        return out


def parse_expiry(value: str) -> datetime:
    """ISO-8601 -> UTC-naive. Accepts a trailing Z."""
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        raise ValueError(f"Invalid expiry date: {value}")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


# =========================================================
# Helpers
# =========================================================
def mark_router_liveness(router, result: RouterResult, now: Optional[datetime] = None) -> None:
    """Router status after a connection attempt (caller commits)."""
    if result.success:
        router.status = RouterStatus.ONLINE
    elif result.kind in (ErrorKind.TIMEOUT, ErrorKind.CONNECTION_REFUSED, ErrorKind.CANCELLED):
        router.status = RouterStatus.OFFLINE
    else:
        router.status = RouterStatus.ERROR
    router.last_checked_at = now or utcnow_naive()
    db.session.add(router)


def _resolve_agent(agent):
    if agent is not None:
        return agent
    from ..router_agent import get_router_agent

    return get_router_agent()


def _fetch_remote(router, agent, now: datetime) -> RouterResult:
    result = agent.fetch_accounts(RouterDescriptor.from_router(router))
    mark_router_liveness(router, result, now)
    return result


def _local_snapshot(router_id: int) -> list[LocalAccount]:
    rows = PPPoEUser.query.filter(PPPoEUser.router_id == router_id).order_by(PPPoEUser.id.asc()).all()
    return [LocalAccount.from_model(u) for u in rows]


def _username_taken(router_id: int, username: str) -> bool:
    return (
        db.session.query(PPPoEUser.id)
        .filter(PPPoEUser.router_id == router_id, PPPoEUser.username == username)
        .first()
        is not None
    )


def _iso(dt: Optional[datetime]) -> str:
    return dt.isoformat() if dt else "none"


def _skip_account(
    report: "SyncResult",
    username: str,
    exc: SQLAlchemyError,
    action: str,
    *,
    pppoe_user_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> None:
    """Roll back one account, record why, and let the batch carry on."""
    db.session.rollback()
    reason = "duplicate username" if isinstance(exc, IntegrityError) else exc.__class__.__name__
    log.warning("Account skipped | router_id=%s username=%s reason=%s error=%s", report.router_id, username, reason, exc)
    report.skipped.append(username)
    log_action_now(
        action,
        f'User "{username}" skipped: {reason}',
        router_id=report.router_id,
        pppoe_user_id=pppoe_user_id,
        now=now,
    )


# =========================================================
# Import (scan, then operator-confirmed save)
# =========================================================
def scan_import(router, agent=None, now: Optional[datetime] = None) -> SyncResult:
    """
    Import step 1: list router secrets that have no local account yet.

    Writes nothing but router liveness and one audit row.
    """
    agent = _resolve_agent(agent)
    now = now or utcnow_naive()
    router_id = router.id

    result = _fetch_remote(router, agent, now)
    if not result.success:
        db.session.commit()
        log.warning("Import scan failed | router_id=%s %s", router_id, result.describe())
        return SyncResult(success=False, router_id=router_id, failure=result)

    plan = plan_reconciliation(result.data, _local_snapshot(router_id))

    log_action(
        LogAction.IMPORT_SCAN,
        f"Import scan completed: {len(plan.new)} new users found",
        router_id=router_id,
        now=now,
    )
    db.session.commit()

    log.info("Import scan | router_id=%s remote=%s new=%s", router_id, plan.remote_total, len(plan.new))
    return SyncResult(success=True, router_id=router_id, plan=plan)


def commit_import(router, selections: Iterable[ImportSelection], now: Optional[datetime] = None) -> SyncResult:
    """
    Import step 2: persist the secrets the operator assigned an expiry to.

    Selections without an expiry are skipped, never defaulted. Each account
    commits on its own so one duplicate does not sink the batch.
    """
    now = now or utcnow_naive()
    router_id = router.id
    report = SyncResult(success=True, router_id=router_id)

    for sel in selections:
        username = (sel.username or "").strip()
        if not username or sel.expiry_at is None:
            report.skipped.append(username)
            continue

        if _username_taken(router_id, username):
            report.skipped.append(username)
            continue

        try:
            user = PPPoEUser(
                router_id=router_id,
                username=username,
                password=sel.password,
                status=sel.status,
                source=AccountSource.IMPORTED,
                activated_at=now,
                imported_at=now,
                expiry_at=sel.expiry_at,
            )
            db.session.add(user)
            db.session.flush()

            record_expiry_adjustment(user, None, sel.expiry_at, AdjustmentType.IMPORT_SET, now)
            log_action(
                LogAction.USER_IMPORTED,
                f'User "{username}" imported with expiry {_iso(sel.expiry_at)}',
                router_id=router_id,
                pppoe_user_id=user.id,
                now=now,
            )
            db.session.commit()
            report.added.append(username)
        except SQLAlchemyError as e:
            _skip_account(report, username, e, LogAction.USER_IMPORT_FAILED, now=now)

    log_action(
        LogAction.IMPORT_COMPLETED,
        f"Import completed: {len(report.added)} users imported, {len(report.skipped)} users skipped",
        router_id=router_id,
        now=now,
    )
    db.session.commit()
    return report


# =========================================================
# Resync (fetch + merge in one go)
# =========================================================
def preview_resync(router, agent=None, now: Optional[datetime] = None) -> SyncResult:
    """Fetch and plan without applying anything (router liveness is still recorded)."""
    agent = _resolve_agent(agent)
    now = now or utcnow_naive()
    router_id = router.id

    result = _fetch_remote(router, agent, now)
    db.session.commit()
    if not result.success:
        return SyncResult(success=False, router_id=router_id, failure=result)

    return SyncResult(success=True, router_id=router_id, plan=plan_reconciliation(result.data, _local_snapshot(router_id)))


def resync_router(router, agent=None, now: Optional[datetime] = None) -> SyncResult:
    agent = _resolve_agent(agent)
    now = now or utcnow_naive()
    router_id = router.id

    result = _fetch_remote(router, agent, now)
    if not result.success:
        log_action(LogAction.RESYNC_FAILED, f"Resync failed: {result.describe()}", router_id=router_id, now=now)
        db.session.commit()
        log.warning("Resync failed | router_id=%s %s", router_id, result.describe())
        return SyncResult(success=False, router_id=router_id, failure=result)

    plan = plan_reconciliation(result.data, _local_snapshot(router_id))
    report = SyncResult(success=True, router_id=router_id, plan=plan)
    db.session.commit()

    for cand in plan.new:
        try:
            user = PPPoEUser(
                router_id=router_id,
                username=cand.username,
                password=cand.password or None,
                status=cand.status,
                source=AccountSource.IMPORTED,
                activated_at=now,
                imported_at=now,
                expiry_at=None,
            )
            db.session.add(user)
            db.session.flush()

            record_expiry_adjustment(user, None, None, AdjustmentType.IMPORT_SET, now)
            log_action(
                LogAction.USER_IMPORTED,
                f'User "{cand.username}" imported during resync (status {cand.status.value}, no expiry)',
                router_id=router_id,
                pppoe_user_id=user.id,
                now=now,
            )
            db.session.commit()
            report.added.append(cand.username)
        except SQLAlchemyError as e:
            _skip_account(report, cand.username, e, LogAction.USER_IMPORT_FAILED, now=now)

    for upd in plan.updates:
        try:
            user = db.session.get(PPPoEUser, upd.account_id)
            if user is None:
                report.skipped.append(upd.username)
                continue

            changes: list[str] = []
            if upd.status is not None:
                changes.append(f"status {user.status.value} -> {upd.status.value}")
                user.status = upd.status
            if upd.password is not None:
                changes.append("password")
                user.password = upd.password

            # expiry is locally owned: recorded unchanged
            record_expiry_adjustment(user, user.expiry_at, user.expiry_at, AdjustmentType.IMPORT_SET, now)
            log_action(
                LogAction.USER_RESYNCED,
                f'User "{user.username}" resynced from router: {", ".join(changes)}',
                router_id=router_id,
                pppoe_user_id=user.id,
                now=now,
            )
            db.session.commit()
            report.updated.append(upd.username)
        except SQLAlchemyError as e:
            _skip_account(report, upd.username, e, LogAction.USER_RESYNC_FAILED, pppoe_user_id=upd.account_id, now=now)

    for d in plan.discrepancies:
        log.warning("Resync discrepancy | router_id=%s username=%s reason=%s", router_id, d.username, d.reason)

    log_action(
        LogAction.RESYNC,
        (
            f"Resync completed: {len(report.added)} new users imported, "
            f"{len(report.updated)} users updated, {len(report.skipped)} skipped, "
            f"{len(plan.discrepancies)} discrepancies"
        ),
        router_id=router_id,
        now=now,
    )
    db.session.commit()

    log.info("Resync | router_id=%s %s", router_id, plan.summary())
    return report
