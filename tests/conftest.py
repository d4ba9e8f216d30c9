import os

# Config reads DATABASE_URL at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta

import pytest

from pppoe_manager import create_app
from pppoe_manager.domain import (
    AccountSource,
    AccountStatus,
    ErrorKind,
    RemoteAccount,
    RouterResult,
)
from pppoe_manager.extensions import db
from pppoe_manager.models import LogEntry, PPPoEUser, Router, SpeedPlan

NOW = datetime(2024, 6, 1, 12, 0, 0)


class FakeRouterAgent:
    """
    In-memory stand-in for RouterAgent.

    - secrets: router id -> list of RemoteAccount returned by fetch_accounts
    - failures: operation name -> RouterResult returned instead of success
    - user_failures: username -> RouterResult for set_enabled/set_password
    - user_errors: username -> exception raised by set_enabled
    """

    def __init__(self):
        self.secrets: dict = {}
        self.failures: dict = {}
        self.user_failures: dict = {}
        self.user_errors: dict = {}
        self.calls: list = []
        self.cancel_calls = 0
        self.reset_calls = 0

    def _failure(self, operation, username=None):
        if username is not None and username in self.user_failures:
            return self.user_failures[username]
        return self.failures.get(operation)

    def test_connection(self, descriptor):
        self.calls.append(("test_connection", descriptor.address))
        return self._failure("test_connection") or RouterResult.ok(
            "Successfully connected to RouterOS device", data={"identity": "MikroTik"}
        )

    def fetch_accounts(self, descriptor):
        self.calls.append(("fetch_accounts", descriptor.id))
        failure = self._failure("fetch_accounts")
        if failure:
            return failure
        accounts = list(self.secrets.get(descriptor.id, []))
        return RouterResult.ok(f"Successfully fetched {len(accounts)} users", data=accounts)

    def create_account(self, descriptor, username, secret, rate_limit=None):
        self.calls.append(("create_account", username, secret, rate_limit))
        return self._failure("create_account", username) or RouterResult.ok("created")

    def set_enabled(self, descriptor, username, enabled):
        self.calls.append(("set_enabled", username, enabled))
        if username in self.user_errors:
            raise self.user_errors[username]
        return self._failure("set_enabled", username) or RouterResult.ok("ok")

    def set_password(self, descriptor, username, new_secret):
        self.calls.append(("set_password", username, new_secret))
        return self._failure("set_password", username) or RouterResult.ok("ok")

    def cancel_all(self):
        self.cancel_calls += 1
        return 0

    def reset(self):
        self.reset_calls += 1

    def calls_for(self, operation):
        return [c for c in self.calls if c[0] == operation]


def failure(kind: ErrorKind, error: str = "boom") -> RouterResult:
    return RouterResult.failed(error, kind, ["hint"])


def remote(name, password="pw", disabled=False, **kwargs) -> RemoteAccount:
    return RemoteAccount(name=name, password=password, disabled=disabled, secret_id=f"*{name}", **kwargs)


@pytest.fixture()
def database_uri():
    """In-memory by default; override for tests that write from several threads."""
    return "sqlite://"


@pytest.fixture()
def app(database_uri):
    app = create_app(
        {
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": database_uri,
            "RATELIMIT_ENABLED": False,
            "SCHEDULER_ENABLED": False,
            "DEFAULT_ACCOUNT_DAYS": 30,
            "DEFAULT_RECHARGE_DAYS": 30,
        }
    )
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def agent(app):
    fake = FakeRouterAgent()
    app.extensions["router_agent"] = fake
    return fake


@pytest.fixture()
def make_router(app):
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        values = {
            "friendly_name": f"R{counter['n']}",
            "address": f"10.0.0.{counter['n']}",
            "port": 8728,
            "api_username": "admin",
            "api_password": "secret",
        }
        values.update(kwargs)
        router = Router(**values)
        db.session.add(router)
        db.session.commit()
        return router

    return _make


@pytest.fixture()
def make_user(app):
    def _make(router, username, **kwargs):
        values = {
            "router_id": router.id,
            "username": username,
            "password": "pw",
            "status": AccountStatus.ACTIVE,
            "source": AccountSource.MANUAL,
            "activated_at": NOW - timedelta(days=30),
            "expiry_at": NOW + timedelta(days=1),
        }
        values.update(kwargs)
        user = PPPoEUser(**values)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture()
def make_plan(app):
    def _make(router, **kwargs):
        values = {
            "router_id": router.id,
            "name": "10M",
            "download_speed": 10240,
            "upload_speed": 2048,
        }
        values.update(kwargs)
        plan = SpeedPlan(**values)
        db.session.add(plan)
        db.session.commit()
        return plan

    return _make


def log_actions(**filters) -> list[str]:
    query = LogEntry.query.filter_by(**filters).order_by(LogEntry.id.asc())
    return [row.action for row in query.all()]
