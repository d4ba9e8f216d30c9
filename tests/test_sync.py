"""Tests for router import and resync."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import NOW, failure, log_actions, remote
from pppoe_manager.domain import (
    AccountSource,
    AccountStatus,
    AdjustmentType,
    ErrorKind,
    LogAction,
    RouterStatus,
)
from pppoe_manager.extensions import db
from pppoe_manager.models import ExpiryAdjustment, LogEntry, PPPoEUser
from pppoe_manager.services import sync
from pppoe_manager.services.reconcile import MISSING_ON_ROUTER
from pppoe_manager.services.sync import (
    ImportSelection,
    commit_import,
    parse_expiry,
    preview_resync,
    resync_router,
    scan_import,
)


@pytest.fixture
def storage_error_for(monkeypatch):
    """Make the expiry-adjustment write fail for the given usernames."""
    original = sync.record_expiry_adjustment

    def install(*usernames):
        def failing(user, *args, **kwargs):
            if user.username in usernames:
                raise OperationalError("INSERT INTO expiry_adjustments", {}, Exception("disk I/O error"))
            return original(user, *args, **kwargs)

        monkeypatch.setattr(sync, "record_expiry_adjustment", failing)

    return install


class TestParseExpiry:
    def test_zulu_suffix(self):
        assert parse_expiry("2024-07-01T00:00:00Z") == datetime(2024, 7, 1)

    def test_offset_converted_to_utc(self):
        assert parse_expiry("2024-07-01T03:00:00+03:00") == datetime(2024, 7, 1)

    def test_naive_kept(self):
        assert parse_expiry("2024-07-01T08:30:00") == datetime(2024, 7, 1, 8, 30)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            parse_expiry("next tuesday")

    def test_selection_rejects_unknown_status(self):
        with pytest.raises(ValueError):
            ImportSelection.from_dict({"username": "bob", "status": "PAUSED"})


# =============================================================================
# Import
# =============================================================================


class TestImport:
    def test_scan_lists_only_unknown_secrets(self, agent, make_router, make_user):
        router = make_router()
        make_user(router, "known")
        agent.secrets[router.id] = [remote("known"), remote("bob")]

        res = scan_import(router, now=NOW)

        assert res.success
        assert [c.username for c in res.plan.new] == ["bob"]
        assert router.status == RouterStatus.ONLINE
        assert PPPoEUser.query.filter_by(username="bob").first() is None
        assert LogAction.IMPORT_SCAN in log_actions(router_id=router.id)

    def test_scan_failure_marks_router_offline(self, agent, make_router):
        router = make_router()
        agent.failures["fetch_accounts"] = failure(ErrorKind.TIMEOUT, "timed out")

        res = scan_import(router, now=NOW)

        assert not res.success
        assert res.failure.kind == ErrorKind.TIMEOUT
        assert router.status == RouterStatus.OFFLINE
        assert router.last_checked_at == NOW

    def test_commit_creates_imported_account_with_expiry(self, agent, make_router):
        router = make_router()
        expiry = NOW + timedelta(days=30)

        res = commit_import(
            router,
            [ImportSelection(username="bob", status=AccountStatus.ACTIVE, password="b0b", expiry_at=expiry)],
            now=NOW,
        )

        assert res.added == ["bob"]
        bob = PPPoEUser.query.filter_by(router_id=router.id, username="bob").one()
        assert bob.source == AccountSource.IMPORTED
        assert bob.status == AccountStatus.ACTIVE
        assert bob.expiry_at == expiry
        assert bob.imported_at == NOW

        adj = ExpiryAdjustment.query.filter_by(pppoe_user_id=bob.id).one()
        assert adj.type == AdjustmentType.IMPORT_SET
        assert adj.previous_expiry is None
        assert adj.new_expiry == expiry

        actions = log_actions(router_id=router.id)
        assert LogAction.USER_IMPORTED in actions
        assert actions[-1] == LogAction.IMPORT_COMPLETED

    def test_selection_without_expiry_is_skipped(self, agent, make_router):
        router = make_router()

        res = commit_import(router, [ImportSelection(username="bob")], now=NOW)

        assert res.added == []
        assert res.skipped == ["bob"]
        assert PPPoEUser.query.count() == 0

    def test_existing_username_is_skipped_but_batch_continues(self, agent, make_router, make_user):
        router = make_router()
        make_user(router, "bob")
        expiry = NOW + timedelta(days=5)

        res = commit_import(
            router,
            [ImportSelection(username="bob", expiry_at=expiry), ImportSelection(username="zoe", expiry_at=expiry)],
            now=NOW,
        )

        assert res.skipped == ["bob"]
        assert res.added == ["zoe"]
        assert PPPoEUser.query.filter_by(router_id=router.id).count() == 2

    def test_same_username_on_other_router_is_allowed(self, agent, make_router, make_user):
        r1 = make_router()
        r2 = make_router()
        make_user(r1, "bob")

        res = commit_import(r2, [ImportSelection(username="bob", expiry_at=NOW)], now=NOW)

        assert res.added == ["bob"]


# =============================================================================
# Resync
# =============================================================================


class TestResync:
    def test_resync_merges_router_state(self, agent, make_router, make_user):
        router = make_router()
        expiry = NOW + timedelta(days=10)
        carol = make_user(router, "carol", password="old", expiry_at=expiry)
        make_user(router, "erin")
        agent.secrets[router.id] = [remote("carol", password="new", disabled=True), remote("dave")]

        res = resync_router(router, now=NOW)

        assert res.success
        assert res.added == ["dave"]
        assert res.updated == ["carol"]

        db.session.expire_all()
        carol = db.session.get(PPPoEUser, carol.id)
        assert carol.status == AccountStatus.DISABLED
        assert carol.password == "new"
        assert carol.expiry_at == expiry

        adj = ExpiryAdjustment.query.filter_by(pppoe_user_id=carol.id).one()
        assert adj.type == AdjustmentType.IMPORT_SET
        assert adj.previous_expiry == expiry
        assert adj.new_expiry == expiry

        dave = PPPoEUser.query.filter_by(router_id=router.id, username="dave").one()
        assert dave.source == AccountSource.IMPORTED
        assert dave.expiry_at is None

        # local-only accounts are reported, never deleted
        assert PPPoEUser.query.filter_by(username="erin").one() is not None
        assert [(d.username, d.reason) for d in res.plan.discrepancies] == [("erin", MISSING_ON_ROUTER)]

        actions = log_actions(router_id=router.id)
        assert LogAction.USER_RESYNCED in actions
        assert actions[-1] == LogAction.RESYNC
        assert router.status == RouterStatus.ONLINE

    def test_expired_account_stays_expired(self, agent, make_router, make_user):
        router = make_router()
        user = make_user(router, "frank", status=AccountStatus.EXPIRED)
        agent.secrets[router.id] = [remote("frank", disabled=False)]

        res = resync_router(router, now=NOW)

        db.session.expire_all()
        assert db.session.get(PPPoEUser, user.id).status == AccountStatus.EXPIRED
        assert res.updated == []
        assert [d.username for d in res.plan.discrepancies] == ["frank"]

    def test_second_resync_changes_nothing(self, agent, make_router, make_user):
        router = make_router()
        make_user(router, "carol", password="old")
        agent.secrets[router.id] = [remote("carol", password="new", disabled=True), remote("dave")]

        resync_router(router, now=NOW)
        again = resync_router(router, now=NOW)

        assert again.added == []
        assert again.updated == []
        assert PPPoEUser.query.filter_by(router_id=router.id).count() == 2

    def test_fetch_failure_writes_nothing_but_audit(self, agent, make_router, make_user):
        router = make_router()
        make_user(router, "carol")
        agent.failures["fetch_accounts"] = failure(ErrorKind.AUTHENTICATION_FAILED, "invalid user name or password")

        res = resync_router(router, now=NOW)

        assert not res.success
        assert res.to_dict()["kind"] == "AUTHENTICATION_FAILED"
        assert router.status == RouterStatus.ERROR
        assert log_actions(router_id=router.id) == [LogAction.RESYNC_FAILED]

    def test_preview_does_not_write_accounts(self, agent, make_router):
        router = make_router()
        agent.secrets[router.id] = [remote("dave")]

        res = preview_resync(router, now=NOW)

        assert [c.username for c in res.plan.new] == ["dave"]
        assert PPPoEUser.query.count() == 0


class TestStorageErrors:
    def test_commit_import_continues_after_storage_error(self, agent, make_router, storage_error_for):
        router = make_router()
        storage_error_for("x")
        expiry = NOW + timedelta(days=30)

        res = commit_import(
            router,
            [ImportSelection(username="x", expiry_at=expiry), ImportSelection(username="y", expiry_at=expiry)],
            now=NOW,
        )

        assert res.skipped == ["x"]
        assert res.added == ["y"]
        assert PPPoEUser.query.filter_by(router_id=router.id, username="x").first() is None
        assert PPPoEUser.query.filter_by(router_id=router.id, username="y").one() is not None

        actions = log_actions(router_id=router.id)
        assert LogAction.USER_IMPORT_FAILED in actions
        assert actions[-1] == LogAction.IMPORT_COMPLETED

    def test_resync_continues_after_storage_error_on_new_account(self, agent, make_router, storage_error_for):
        router = make_router()
        storage_error_for("x")
        agent.secrets[router.id] = [remote("x"), remote("y")]

        res = resync_router(router, now=NOW)

        assert res.success
        assert res.skipped == ["x"]
        assert res.added == ["y"]
        assert PPPoEUser.query.filter_by(router_id=router.id, username="x").first() is None
        assert PPPoEUser.query.filter_by(router_id=router.id, username="y").one() is not None

        actions = log_actions(router_id=router.id)
        assert LogAction.USER_IMPORT_FAILED in actions
        assert actions[-1] == LogAction.RESYNC

    def test_resync_continues_after_storage_error_on_update(self, agent, make_router, make_user, storage_error_for):
        router = make_router()
        x = make_user(router, "x", password="old")
        y = make_user(router, "y", password="old")
        x_id, y_id = x.id, y.id
        storage_error_for("x")
        agent.secrets[router.id] = [remote("x", password="new"), remote("y", password="new")]

        res = resync_router(router, now=NOW)

        assert res.skipped == ["x"]
        assert res.updated == ["y"]

        db.session.expire_all()
        assert db.session.get(PPPoEUser, x_id).password == "old"
        assert db.session.get(PPPoEUser, y_id).password == "new"
        assert LogAction.USER_RESYNC_FAILED in log_actions(pppoe_user_id=x_id)

    def test_resync_summary_counts_skipped(self, agent, make_router, storage_error_for):
        router = make_router()
        storage_error_for("x")
        agent.secrets[router.id] = [remote("x"), remote("y")]

        resync_router(router, now=NOW)

        summary = LogEntry.query.filter_by(router_id=router.id, action=LogAction.RESYNC).one()
        assert "1 new users imported" in summary.details
        assert "1 skipped" in summary.details
