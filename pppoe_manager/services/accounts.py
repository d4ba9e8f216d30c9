# pppoe_manager/services/accounts.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from flask import current_app

from ..domain import (
    AccountSource,
    AccountStatus,
    AdjustmentType,
    LogAction,
    RouterDescriptor,
    RouterResult,
    utcnow_naive,
)
from ..extensions import db
from ..models import PPPoEUser, Router, SpeedPlan
from .audit import log_action, record_expiry_adjustment
from .sync import mark_router_liveness

log = logging.getLogger("pppoe.accounts")


class AccountError(ValueError):
    """Invalid request against an account (maps to HTTP 400)."""


class NotFoundError(LookupError):
    """Referenced router/account/plan does not exist (maps to HTTP 404)."""


@dataclass
class AccountResult:
    """Outcome of an account operation: local row + the router result, if any."""

    ok: bool
    user: Optional[PPPoEUser] = None
    router: Optional[RouterResult] = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"success": self.ok}
        if self.message:
            out["message"] = self.message
        if self.user is not None:
            out["user"] = self.user.to_dict()
        if self.router is not None and not self.router.success:
            out.update({k: v for k, v in self.router.to_dict().items() if k != "success"})
        return out


def _agent(agent):
    if agent is not None:
        return agent
    from ..router_agent import get_router_agent

    return get_router_agent()


def _config_int(key: str, default: int) -> int:
    try:
        return int(current_app.config.get(key, default))
    except (RuntimeError, TypeError, ValueError):
        return default


# =========================================================
# Lookups
# =========================================================
def get_router(router_id: int) -> Router:
    router = db.session.get(Router, router_id)
    if router is None:
        raise NotFoundError("Router not found")
    return router


def get_user(user_id: int) -> PPPoEUser:
    user = db.session.get(PPPoEUser, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def get_speed_plan(plan_id: int, router_id: int) -> SpeedPlan:
    plan = db.session.get(SpeedPlan, plan_id)
    if plan is None or plan.router_id != router_id:
        raise NotFoundError("Speed plan not found")
    if not plan.is_active:
        raise AccountError("Speed plan is not active")
    return plan


# =========================================================
# Expiry math
# =========================================================
def compute_recharge_expiry(previous: Optional[datetime], days: int, now: datetime) -> datetime:
    """
    Extend from the previous expiry while it is still in the future,
    otherwise start counting from now.
    """
    if days <= 0:
        raise AccountError("Days must be greater than 0")
    base = previous if previous is not None and previous > now else now
    return base + timedelta(days=days)


# =========================================================
# Router connection test
# =========================================================
def check_router_connection(descriptor: RouterDescriptor, router: Optional[Router] = None, agent=None) -> RouterResult:
    """Run a connection test; for a stored router also record liveness + audit."""
    result = _agent(agent).test_connection(descriptor)

    if router is not None:
        now = utcnow_naive()
        mark_router_liveness(router, result, now)
        log_action(
            LogAction.CONNECTION_SUCCESS if result.success else LogAction.CONNECTION_FAILED,
            f"Connection test {'successful' if result.success else 'failed'}: {result.error or 'Connected'}",
            router_id=router.id,
            now=now,
        )
        try:
            db.session.commit()
        except Exception:
            # the test result stands even if recording it fails
            db.session.rollback()
            log.exception("Failed to record connection test | router_id=%s", router.id)

    return result


# =========================================================
# Create
# =========================================================
def create_account(
    router: Router,
    username: str,
    password: str,
    speed_plan: Optional[SpeedPlan] = None,
    days: Optional[int] = None,
    agent=None,
    now: Optional[datetime] = None,
) -> AccountResult:
    """
    Create the secret on the router first, then the local account.

    Nothing is stored locally when the router refuses.
    """
    username = (username or "").strip()
    if not username or not password:
        raise AccountError("Missing required fields")

    days = days if days is not None else _config_int("DEFAULT_ACCOUNT_DAYS", 30)
    if days <= 0:
        raise AccountError("Days must be greater than 0")

    exists = PPPoEUser.query.filter_by(router_id=router.id, username=username).first()
    if exists is not None:
        raise AccountError("User already exists on this router")

    now = now or utcnow_naive()
    rate_limit = speed_plan.rate_limit if speed_plan is not None else None

    result = _agent(agent).create_account(RouterDescriptor.from_router(router), username, password, rate_limit)
    if not result.success:
        log_action(
            LogAction.USER_CREATE_FAILED,
            f'Failed to create user "{username}" on router: {result.describe()}',
            router_id=router.id,
            now=now,
        )
        db.session.commit()
        return AccountResult(ok=False, router=result, message="Router rejected account creation")

    expiry_at = now + timedelta(days=days)
    user = PPPoEUser(
        router_id=router.id,
        username=username,
        password=password,
        status=AccountStatus.ACTIVE,
        source=AccountSource.MANUAL,
        activated_at=now,
        expiry_at=expiry_at,
        speed_plan_id=speed_plan.id if speed_plan is not None else None,
    )
    db.session.add(user)
    db.session.flush()

    record_expiry_adjustment(user, None, expiry_at, AdjustmentType.MANUAL_EDIT, now)
    log_action(
        LogAction.USER_CREATED,
        f'PPPoE user "{username}" created on router "{router.friendly_name}"'
        + (f' with speed plan "{speed_plan.name}"' if speed_plan is not None else ""),
        router_id=router.id,
        pppoe_user_id=user.id,
        now=now,
    )
    db.session.commit()

    log.info("Account created | router_id=%s username=%s expiry=%s", router.id, username, expiry_at.isoformat())
    return AccountResult(ok=True, user=user, router=result, message="PPPoE user created")


# =========================================================
# Enable / disable
# =========================================================
def toggle_account(user: PPPoEUser, enabled: bool, agent=None) -> AccountResult:
    """Flip the router flag; the local status follows only on success."""
    result = _agent(agent).set_enabled(RouterDescriptor.from_router(user.router), user.username, enabled)
    verb = "enable" if enabled else "disable"

    if not result.success:
        log_action(
            LogAction.USER_TOGGLE_FAILED,
            f'Failed to {verb} user "{user.username}" on router: {result.describe()}',
            router_id=user.router_id,
            pppoe_user_id=user.id,
        )
        db.session.commit()
        return AccountResult(ok=False, user=user, router=result, message=f"Router {verb} failed")

    user.status = AccountStatus.ACTIVE if enabled else AccountStatus.DISABLED
    log_action(
        LogAction.USER_ENABLED if enabled else LogAction.USER_DISABLED,
        f'PPPoE user "{user.username}" {verb}d on router "{user.router.friendly_name}"',
        router_id=user.router_id,
        pppoe_user_id=user.id,
    )
    db.session.commit()
    return AccountResult(ok=True, user=user, router=result, message=f"PPPoE user {verb}d")


# =========================================================
# Recharge / expiry edit
# =========================================================
def recharge_account(user: PPPoEUser, days: Optional[int] = None, agent=None, now: Optional[datetime] = None) -> AccountResult:
    """
    Extend expiry and reactivate.

    The expiry change is committed before the router is touched; a failed
    remote enable is audited but does not undo the recharge.
    """
    days = days if days is not None else _config_int("DEFAULT_RECHARGE_DAYS", 30)
    now = now or utcnow_naive()

    previous = user.expiry_at
    new_expiry = compute_recharge_expiry(previous, int(days), now)
    was_blocked = user.status in (AccountStatus.EXPIRED, AccountStatus.DISABLED)

    user.expiry_at = new_expiry
    user.status = AccountStatus.ACTIVE
    user.last_recharged_at = now

    record_expiry_adjustment(user, previous, new_expiry, AdjustmentType.RECHARGE, now)
    log_action(
        LogAction.USER_RECHARGED,
        f'PPPoE user "{user.username}" recharged for {days} days (expiry {new_expiry.isoformat()})',
        router_id=user.router_id,
        pppoe_user_id=user.id,
        now=now,
    )
    db.session.commit()

    enable_result: Optional[RouterResult] = None
    if was_blocked:
        enable_result = _agent(agent).set_enabled(RouterDescriptor.from_router(user.router), user.username, True)
        if not enable_result.success:
            log_action(
                LogAction.USER_ENABLE_FAILED,
                f'Failed to enable user "{user.username}" on router: {enable_result.describe()}',
                router_id=user.router_id,
                pppoe_user_id=user.id,
            )
            db.session.commit()
            log.warning("Recharge enable failed | user_id=%s %s", user.id, enable_result.describe())

    return AccountResult(ok=True, user=user, router=enable_result, message="PPPoE user recharged")


def set_expiry(user: PPPoEUser, expiry_at: datetime, now: Optional[datetime] = None) -> AccountResult:
    if expiry_at is None:
        raise AccountError("Expiry date is required")
    now = now or utcnow_naive()

    previous = user.expiry_at
    user.expiry_at = expiry_at

    record_expiry_adjustment(user, previous, expiry_at, AdjustmentType.MANUAL_EDIT, now)
    log_action(
        LogAction.USER_EXPIRY_UPDATED,
        f'PPPoE user "{user.username}" expiry updated to {expiry_at.isoformat()}',
        router_id=user.router_id,
        pppoe_user_id=user.id,
        now=now,
    )
    db.session.commit()
    return AccountResult(ok=True, user=user, message="Expiry updated")


# =========================================================
# Password
# =========================================================
def change_password(user: PPPoEUser, new_password: str, agent=None) -> AccountResult:
    if not new_password:
        raise AccountError("Password is required")

    result = _agent(agent).set_password(RouterDescriptor.from_router(user.router), user.username, new_password)
    if not result.success:
        log_action(
            LogAction.USER_PASSWORD_UPDATE_FAILED,
            f'Failed to update password of "{user.username}" on router: {result.describe()}',
            router_id=user.router_id,
            pppoe_user_id=user.id,
        )
        db.session.commit()
        return AccountResult(ok=False, user=user, router=result, message="Router password update failed")

    user.password = new_password
    log_action(
        LogAction.USER_PASSWORD_UPDATED,
        f'PPPoE user "{user.username}" password updated',
        router_id=user.router_id,
        pppoe_user_id=user.id,
    )
    db.session.commit()
    return AccountResult(ok=True, user=user, router=result, message="Password updated")
