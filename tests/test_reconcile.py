"""Tests for the pure router/local reconciliation plan."""

import pytest

from pppoe_manager.domain import AccountSource, AccountStatus, RemoteAccount
from pppoe_manager.services.reconcile import (
    EXPIRED_BUT_ENABLED,
    MISSING_ON_ROUTER,
    LocalAccount,
    plan_reconciliation,
    reconcile_status,
)


def _remote(name, password="pw", disabled=False):
    return RemoteAccount(name=name, password=password, disabled=disabled, secret_id=f"*{name}")


def _local(id, username, status=AccountStatus.ACTIVE, password="pw"):
    return LocalAccount(id=id, username=username, status=status, password=password)


class TestReconcileStatus:
    @pytest.mark.parametrize(
        "local,remote_disabled,expected",
        [
            (AccountStatus.ACTIVE, True, AccountStatus.DISABLED),
            (AccountStatus.ACTIVE, False, AccountStatus.ACTIVE),
            (AccountStatus.DISABLED, False, AccountStatus.ACTIVE),
            (AccountStatus.DISABLED, True, AccountStatus.DISABLED),
            (AccountStatus.EXPIRED, True, AccountStatus.EXPIRED),
        ],
    )
    def test_status_follows_router_flag(self, local, remote_disabled, expected):
        status, reason = reconcile_status(local, remote_disabled)
        assert status == expected
        assert reason is None

    def test_expired_but_enabled_is_reported_not_rewritten(self):
        status, reason = reconcile_status(AccountStatus.EXPIRED, False)
        assert status == AccountStatus.EXPIRED
        assert reason == EXPIRED_BUT_ENABLED


class TestPlanReconciliation:
    def test_new_secret_becomes_import_candidate(self):
        plan = plan_reconciliation([_remote("bob")], [])

        assert [c.username for c in plan.new] == ["bob"]
        assert plan.new[0].source == AccountSource.IMPORTED
        assert plan.new[0].status == AccountStatus.ACTIVE
        assert plan.remote_total == 1

    def test_disabled_secret_imports_as_disabled(self):
        plan = plan_reconciliation([_remote("bob", disabled=True)], [])
        assert plan.new[0].status == AccountStatus.DISABLED

    def test_status_and_password_update(self):
        plan = plan_reconciliation(
            [_remote("carol", password="new", disabled=True)],
            [_local(1, "carol", password="old")],
        )

        assert len(plan.updates) == 1
        update = plan.updates[0]
        assert update.account_id == 1
        assert update.status == AccountStatus.DISABLED
        assert update.password == "new"
        assert update.fields == ["status", "password"]

    def test_empty_remote_password_keeps_local(self):
        plan = plan_reconciliation([_remote("carol", password="")], [_local(1, "carol", password="old")])

        assert plan.updates == []
        assert plan.unchanged == ["carol"]

    def test_local_only_account_reported_missing(self):
        plan = plan_reconciliation([], [_local(5, "erin")])

        assert plan.new == []
        assert plan.updates == []
        assert [(d.username, d.reason, d.account_id) for d in plan.discrepancies] == [("erin", MISSING_ON_ROUTER, 5)]

    def test_duplicate_remote_names_count_once(self):
        plan = plan_reconciliation([_remote("bob"), _remote("bob", password="other")], [])

        assert [c.username for c in plan.new] == ["bob"]
        assert plan.new[0].password == "pw"
        assert plan.remote_total == 2

    def test_applying_plan_twice_is_a_no_op(self):
        remote = [_remote("carol", password="new", disabled=True), _remote("dave")]
        local = [_local(1, "carol", password="old")]

        first = plan_reconciliation(remote, local)
        assert first.has_changes

        # state after applying the first plan
        applied = [
            _local(1, "carol", status=first.updates[0].status, password=first.updates[0].password),
            _local(2, "dave", status=first.new[0].status, password=first.new[0].password),
        ]
        second = plan_reconciliation(remote, applied)

        assert not second.has_changes
        assert sorted(second.unchanged) == ["carol", "dave"]

    def test_summary_counts(self):
        plan = plan_reconciliation(
            [_remote("a"), _remote("b", disabled=True)],
            [_local(1, "b"), _local(2, "c")],
        )

        assert plan.summary() == {"remote": 2, "new": 1, "updated": 1, "unchanged": 0, "discrepancies": 1}
