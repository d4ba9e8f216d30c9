# pppoe_manager/scheduler.py
from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .domain import AccountStatus, LogAction, RouterDescriptor, utcnow_naive
from .extensions import db
from .models import PPPoEUser, Router
from .router_agent import RouterAgent
from .services.audit import log_action, log_action_now

log = logging.getLogger("pppoe.expiry")

JOB_ID = "pppoe_expiry_enforcer"


@dataclass(frozen=True)
class OverdueAccount:
    """Plain snapshot of one overdue account (safe to hand to worker threads)."""

    account_id: int
    router_id: int
    username: str
    expiry_at: datetime
    router: RouterDescriptor


@dataclass
class TickReport:
    started_at: Optional[datetime] = None
    checked: int = 0
    expired: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    dry_run: bool = False
    skipped: bool = False
    error: Optional[str] = None

    def merge(self, other: "TickReport") -> None:
        self.expired.extend(other.expired)
        self.failed.extend(other.failed)
        self.errors.extend(other.errors)


def list_overdue_accounts(now: datetime) -> list[OverdueAccount]:
    """ACTIVE accounts whose expiry is strictly before `now`, oldest first."""
    rows = (
        db.session.query(PPPoEUser, Router)
        .join(Router, PPPoEUser.router_id == Router.id)
        .filter(
            PPPoEUser.status == AccountStatus.ACTIVE,
            PPPoEUser.expiry_at.isnot(None),
            PPPoEUser.expiry_at < now,
        )
        .order_by(PPPoEUser.router_id.asc(), PPPoEUser.expiry_at.asc(), PPPoEUser.id.asc())
        .all()
    )
    return [
        OverdueAccount(
            account_id=user.id,
            router_id=router.id,
            username=user.username,
            expiry_at=user.expiry_at,
            router=RouterDescriptor.from_router(router),
        )
        for user, router in rows
    ]


class ExpirationScheduler:
    """
    Recurring expiry enforcement.

    Owns its own APScheduler instance; nothing is process-global, so several
    schedulers (e.g. one per test) can coexist. Each tick:
      - lists ACTIVE accounts past expiry
      - disables each one on its router
      - marks it EXPIRED only after the router confirmed the disable
    """

    def __init__(
        self,
        app,
        agent: RouterAgent,
        *,
        interval_minutes: int = 60,
        dry_run: bool = False,
        max_workers: int = 1,
        run_on_start: bool = True,
    ):
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be greater than 0")

        self.app = app
        self.agent = agent
        self.interval_minutes = int(interval_minutes)
        self.dry_run = bool(dry_run)
        self.max_workers = max(1, int(max_workers))
        self.run_on_start = bool(run_on_start)

        self._scheduler: Optional[BackgroundScheduler] = None
        self._tick_lock = threading.Lock()

    @classmethod
    def from_app(cls, app, agent: RouterAgent) -> "ExpirationScheduler":
        return cls(
            app,
            agent,
            interval_minutes=int(app.config.get("EXPIRY_INTERVAL_MINUTES", 60)),
            dry_run=bool(app.config.get("SCHEDULER_DRY_RUN", False)),
            max_workers=int(app.config.get("EXPIRY_MAX_WORKERS", 1)),
            run_on_start=bool(app.config.get("EXPIRY_RUN_ON_START", True)),
        )

    # -------------------------------
    # Lifecycle
    # -------------------------------
    @property
    def running(self) -> bool:
        return bool(self._scheduler and self._scheduler.running)

    def start(self) -> None:
        if self.running:
            return

        self.agent.reset()
        job_kwargs = {}
        if self.run_on_start:
            job_kwargs["next_run_time"] = datetime.now(timezone.utc)

        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_once,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id=JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            **job_kwargs,
        )
        scheduler.start()
        self._scheduler = scheduler

        log.info(
            "Expiration scheduler started (interval=%sm, dry_run=%s, workers=%s, run_on_start=%s)",
            self.interval_minutes, self.dry_run, self.max_workers, self.run_on_start,
        )

    def stop(self, wait: bool = True) -> None:
        if self._scheduler is None:
            return

        # unblock a tick stuck on a hung router before waiting for it
        self.agent.cancel_all()
        try:
            self._scheduler.shutdown(wait=wait)
        finally:
            self._scheduler = None
        if wait:
            # no tick left running; start() resets otherwise
            self.agent.reset()
        log.info("Expiration scheduler stopped")

    # -------------------------------
    # One tick
    # -------------------------------
    def run_once(self, now: Optional[datetime] = None) -> TickReport:
        if not self._tick_lock.acquire(blocking=False):
            log.warning("Expiry tick skipped: previous tick still running")
            return TickReport(skipped=True)

        try:
            with self.app.app_context():
                return self._tick(now or utcnow_naive())
        finally:
            self._tick_lock.release()

    def _tick(self, now: datetime) -> TickReport:
        report = TickReport(started_at=now, dry_run=self.dry_run)

        try:
            overdue = list_overdue_accounts(now)
        except Exception as e:
            db.session.rollback()
            log.exception("Expiry tick abandoned: overdue query failed")
            log_action_now(LogAction.SCHEDULER_ERROR, f"Scheduler error: {e}")
            report.error = str(e)
            return report

        report.checked = len(overdue)
        if not overdue:
            log.info("Expiry check: none expired (now_utc=%s, dry_run=%s)", now.isoformat(), self.dry_run)
            return report

        log.info("Expiry check: %s expired account(s) (dry_run=%s)", len(overdue), self.dry_run)

        by_router: "OrderedDict[int, list[OverdueAccount]]" = OrderedDict()
        for acc in overdue:
            by_router.setdefault(acc.router_id, []).append(acc)

        if self.max_workers > 1 and len(by_router) > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(by_router))) as pool:
                for part in pool.map(self._process_router_in_context, by_router.values()):
                    report.merge(part)
        else:
            for accounts in by_router.values():
                report.merge(self._process_router(accounts))

        log.info(
            "Expiry tick done | checked=%s expired=%s failed=%s errors=%s",
            report.checked, len(report.expired), len(report.failed), len(report.errors),
        )
        return report

    def _process_router_in_context(self, accounts: list[OverdueAccount]) -> TickReport:
        with self.app.app_context():
            try:
                return self._process_router(accounts)
            finally:
                db.session.remove()

    def _process_router(self, accounts: list[OverdueAccount]) -> TickReport:
        """Accounts of one router, strictly one after another."""
        part = TickReport()
        for acc in accounts:
            if self.dry_run:
                log.warning(
                    "DRY RUN expiry | user_id=%s user=%s router_id=%s expiry_at=%s",
                    acc.account_id, acc.username, acc.router_id, acc.expiry_at,
                )
                continue
            try:
                self._expire_one(acc, part)
            except Exception as e:
                db.session.rollback()
                log.exception("Expiry error | user_id=%s user=%s", acc.account_id, acc.username)
                part.errors.append(acc.username)
                log_action_now(
                    LogAction.AUTO_DISABLE_ERROR,
                    f'Error processing expired user "{acc.username}": {e}',
                    router_id=acc.router_id,
                    pppoe_user_id=acc.account_id,
                )
        return part

    def _expire_one(self, acc: OverdueAccount, part: TickReport) -> None:
        # remote first: EXPIRED locally must mean disabled on the router
        result = self.agent.set_enabled(acc.router, acc.username, False)

        if not result.success:
            log_action(
                LogAction.AUTO_DISABLE_FAILED,
                f'Failed to auto-disable user "{acc.username}" on router: {result.describe()}',
                router_id=acc.router_id,
                pppoe_user_id=acc.account_id,
            )
            db.session.commit()
            part.failed.append(acc.username)
            log.error("Auto-disable failed | user_id=%s user=%s %s", acc.account_id, acc.username, result.describe())
            return

        user = db.session.get(PPPoEUser, acc.account_id)
        if user is not None and user.status == AccountStatus.ACTIVE:
            user.status = AccountStatus.EXPIRED
        log_action(
            LogAction.AUTO_DISABLED,
            f'User "{acc.username}" automatically disabled due to expiration',
            router_id=acc.router_id,
            pppoe_user_id=acc.account_id,
        )
        db.session.commit()
        part.expired.append(acc.username)
        log.info(
            "Auto-disabled | user_id=%s user=%s router=%s",
            acc.account_id, acc.username, acc.router.name or acc.router.address,
        )
