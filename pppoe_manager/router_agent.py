# pppoe_manager/router_agent.py
from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional

from routeros_api import RouterOsApiPool

from .domain import ErrorKind, RateLimit, RemoteAccount, RouterDescriptor, RouterResult
from .services.routeros_commands import (
    IDENTITY_PATH,
    SECRET_PATH,
    add_secret_payload,
    parse_identity,
    parse_secret,
    parse_secrets,
    set_disabled_payload,
    set_password_payload,
)

logger = logging.getLogger("pppoe.router_agent")


# =========================================================
# Error classification
# =========================================================
SUGGESTIONS: dict[ErrorKind, list[str]] = {
    ErrorKind.TIMEOUT: [
        "Check if the router is running and accessible",
        "Check if the router IP address is correct",
        "Check if there is a firewall blocking the connection",
        "Check if the API service is enabled on the router",
        "Try pinging the router from this server",
    ],
    ErrorKind.CONNECTION_REFUSED: [
        "Check if the API service is enabled on the router",
        "Check if the port number is correct",
        "Check if the router is running",
    ],
    ErrorKind.AUTHENTICATION_FAILED: [
        "Check if the API username is correct",
        "Check if the API password is correct",
        "Check if the user has API permissions",
    ],
    ErrorKind.NOT_FOUND: [
        "Check if the PPPoE secret still exists on the router",
        "Run a resync to refresh the local account list",
    ],
    ErrorKind.ALREADY_EXISTS: [
        "Check if the username already exists on the router",
        "Try using a different username",
        "Check the router for existing PPPoE secrets",
    ],
    ErrorKind.CANCELLED: [
        "The operation was cancelled during shutdown; retry once the service is running",
    ],
    ErrorKind.UNKNOWN: [
        "Check network connectivity",
        "Check router configuration",
        "Check firewall settings",
        "Verify API service is enabled",
    ],
}

CONFIG_SUGGESTIONS = [
    "Check router IP address",
    "Check API username",
    "Check API password",
]

# operation-specific hints for errors that carry no better classification
_OPERATION_SUGGESTIONS: dict[str, list[str]] = {
    "fetch_accounts": [
        "Check if PPPoE service is enabled on the router",
        "Check if user has permission to access PPPoE secrets",
        "Verify router connection",
    ],
    "create_account": [
        "Check if PPPoE service is enabled on the router",
        "Check if the API user has permission to create PPPoE secrets",
        "Check if the username format is valid",
    ],
}

_TIMEOUT_MARKERS = ("timed out", "timeout")
_REFUSED_MARKERS = ("refused", "econnrefused", "errno 111", "winerror 10061")
_AUTH_MARKERS = (
    "invalid user name or password",
    "cannot log in",
    "authentication",
    "not logged in",
    "login failure",
)
_NOT_FOUND_MARKERS = ("no such item", "not found")
_EXISTS_MARKERS = ("already exists", "already have", "duplicate")


class SessionCancelled(RuntimeError):
    """Raised inside a session when the agent has been cancelled."""


def _exception_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        # routeros_api wraps socket errors as the first arg, not as __cause__
        nested = next((a for a in getattr(current, "args", ()) if isinstance(a, BaseException)), None)
        current = current.__cause__ or current.__context__ or nested


def _error_text(exc: BaseException) -> str:
    parts: list[str] = []
    for e in _exception_chain(exc):
        parts.append(str(e))
        original = getattr(e, "original_message", None)
        if isinstance(original, bytes):
            parts.append(original.decode("utf-8", errors="replace"))
        elif original:
            parts.append(str(original))
    return " | ".join(parts).lower()


def error_message(exc: BaseException) -> str:
    original = getattr(exc, "original_message", None)
    if isinstance(original, bytes) and original:
        return original.decode("utf-8", errors="replace")
    return str(exc) or exc.__class__.__name__


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a transport/API exception onto an operator-facing category."""
    chain = list(_exception_chain(exc))

    if any(isinstance(e, SessionCancelled) for e in chain):
        return ErrorKind.CANCELLED
    if any(isinstance(e, TimeoutError) for e in chain):
        return ErrorKind.TIMEOUT
    if any(isinstance(e, ConnectionRefusedError) for e in chain):
        return ErrorKind.CONNECTION_REFUSED

    text = _error_text(exc)
    if any(m in text for m in _TIMEOUT_MARKERS):
        return ErrorKind.TIMEOUT
    if any(m in text for m in _REFUSED_MARKERS):
        return ErrorKind.CONNECTION_REFUSED
    if any(m in text for m in _AUTH_MARKERS):
        return ErrorKind.AUTHENTICATION_FAILED
    if any(m in text for m in _EXISTS_MARKERS):
        return ErrorKind.ALREADY_EXISTS
    if any(m in text for m in _NOT_FOUND_MARKERS):
        return ErrorKind.NOT_FOUND
    return ErrorKind.UNKNOWN


def suggestions_for(kind: ErrorKind, operation: str = "") -> list[str]:
    if kind == ErrorKind.UNKNOWN and operation in _OPERATION_SUGGESTIONS:
        return list(_OPERATION_SUGGESTIONS[operation])
    return list(SUGGESTIONS.get(kind, SUGGESTIONS[ErrorKind.UNKNOWN]))


# =========================================================
# Router agent (one RouterOS API session per operation)
# =========================================================
class RouterAgent:
    """
    RouterOS operations against /ppp/secret.

    Every public method opens its own session, runs a short command
    sequence, and disconnects on every exit path. Methods never raise:
    they return a RouterResult with a classified ErrorKind.
    """

    def __init__(self, *, timeout: float = 15.0, plaintext_login: bool = True):
        self.timeout = float(timeout)
        self.plaintext_login = plaintext_login

        self._cancelled = threading.Event()
        self._live: set[Any] = set()
        self._live_lock = threading.Lock()

    @classmethod
    def from_config(cls, config) -> "RouterAgent":
        return cls(
            timeout=float(config.get("ROUTEROS_TIMEOUT_SECONDS", 15) or 15),
            plaintext_login=bool(config.get("ROUTEROS_PLAINTEXT_LOGIN", True)),
        )

    # -------------------------------
    # Cancellation
    # -------------------------------
    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel_all(self) -> int:
        """
        Refuse new sessions and drop the live ones.

        Closing the socket makes a blocked read/write fail immediately, so a
        hung router cannot hold up shutdown. Returns the number of sessions
        that were torn down.
        """
        self._cancelled.set()
        with self._live_lock:
            pools = list(self._live)
        for pool in pools:
            self._release(pool, reason="cancel")
        if pools:
            logger.warning("RouterOS cancel_all: dropped %s live session(s)", len(pools))
        return len(pools)

    def reset(self) -> None:
        self._cancelled.clear()

    def _raise_if_cancelled(self) -> None:
        if self._cancelled.is_set():
            raise SessionCancelled("Router agent cancelled")

    # -------------------------------
    # Session scope
    # -------------------------------
    def _pool(self, descriptor: RouterDescriptor) -> RouterOsApiPool:
        kwargs: dict[str, Any] = {
            "username": descriptor.username,
            "password": descriptor.password,
            "port": descriptor.port,
            "plaintext_login": self.plaintext_login,
        }
        if descriptor.use_tls:
            kwargs["use_ssl"] = True
            kwargs["ssl_verify"] = True
        return RouterOsApiPool(descriptor.address, **kwargs)

    def _release(self, pool: Any, reason: str = "done") -> None:
        try:
            pool.disconnect()
        except Exception:
            logger.debug("RouterOS disconnect failed (%s)", reason, exc_info=True)

    @contextmanager
    def _session(self, descriptor: RouterDescriptor) -> Iterator[Any]:
        self._raise_if_cancelled()

        pool = self._pool(descriptor)
        # read by RouterOsApiPool.get_api() for connect + socket I/O
        pool.socket_timeout = self.timeout

        with self._live_lock:
            self._live.add(pool)
        try:
            api = pool.get_api()
            self._raise_if_cancelled()
            yield api
        finally:
            with self._live_lock:
                self._live.discard(pool)
            self._release(pool)

    def _run(
        self,
        descriptor: RouterDescriptor,
        operation: str,
        fn: Callable[[Any], RouterResult],
    ) -> RouterResult:
        missing = descriptor.missing_fields()
        if missing:
            return RouterResult.failed(
                "Missing router configuration: " + ", ".join(missing),
                ErrorKind.UNKNOWN,
                CONFIG_SUGGESTIONS,
            )

        started = time.monotonic()
        try:
            with self._session(descriptor) as api:
                result = fn(api)
        except Exception as exc:
            kind = ErrorKind.CANCELLED if self.cancelled else classify_error(exc)
            logger.warning(
                "RouterOS %s failed | router=%s:%s kind=%s error=%s",
                operation, descriptor.address, descriptor.port, kind.value, exc,
            )
            return RouterResult.failed(error_message(exc), kind, suggestions_for(kind, operation))

        logger.info(
            "RouterOS %s | router=%s:%s success=%s elapsed=%.2fs",
            operation, descriptor.address, descriptor.port, result.success, time.monotonic() - started,
        )
        return result

    # -------------------------------
    # Secrets
    # -------------------------------
    @staticmethod
    def _find_secret(api, username: str) -> tuple[Any, Optional[RemoteAccount]]:
        secrets = api.get_resource(SECRET_PATH)
        for row in secrets.get(name=username) or []:
            account = parse_secret(row)
            if account.name == username:
                return secrets, account
        return secrets, None

    @staticmethod
    def _not_found(username: str) -> RouterResult:
        return RouterResult.failed(
            f"PPPoE secret not found: {username}",
            ErrorKind.NOT_FOUND,
            suggestions_for(ErrorKind.NOT_FOUND),
        )

    def test_connection(self, descriptor: RouterDescriptor) -> RouterResult:
        """Open a session and read the router identity. Read-only."""

        def _identity(api) -> RouterResult:
            rows = api.get_resource(IDENTITY_PATH).get()
            return RouterResult.ok(
                "Successfully connected to RouterOS device",
                data={"identity": parse_identity(rows)},
            )

        return self._run(descriptor, "test_connection", _identity)

    def fetch_accounts(self, descriptor: RouterDescriptor) -> RouterResult:
        """Full /ppp/secret listing as RemoteAccount values (result.data)."""

        def _fetch(api) -> RouterResult:
            accounts = parse_secrets(api.get_resource(SECRET_PATH).get())
            return RouterResult.ok(f"Successfully fetched {len(accounts)} users", data=accounts)

        return self._run(descriptor, "fetch_accounts", _fetch)

    def create_account(
        self,
        descriptor: RouterDescriptor,
        username: str,
        secret: str,
        rate_limit: Optional[RateLimit] = None,
    ) -> RouterResult:
        username = (username or "").strip()
        if not username or not secret:
            return RouterResult.failed("Missing username or password", ErrorKind.UNKNOWN)

        def _create(api) -> RouterResult:
            api.get_resource(SECRET_PATH).add(**add_secret_payload(username, secret, rate_limit))
            return RouterResult.ok(f'Successfully created user "{username}" on RouterOS device')

        return self._run(descriptor, "create_account", _create)

    def set_enabled(self, descriptor: RouterDescriptor, username: str, enabled: bool) -> RouterResult:
        username = (username or "").strip()
        if not username:
            return RouterResult.failed("Missing username", ErrorKind.UNKNOWN)

        def _toggle(api) -> RouterResult:
            secrets, account = self._find_secret(api, username)
            if account is None:
                return self._not_found(username)
            if not account.secret_id:
                return RouterResult.failed("Router returned secret without .id", ErrorKind.UNKNOWN)

            self._raise_if_cancelled()
            # always written, even if the flag already matches: a garbled
            # flag reads as disabled and must not short-circuit a disable
            secrets.set(**set_disabled_payload(account.secret_id, not enabled))
            return RouterResult.ok("PPPoE secret enabled" if enabled else "PPPoE secret disabled")

        return self._run(descriptor, "set_enabled", _toggle)

    def set_password(self, descriptor: RouterDescriptor, username: str, new_secret: str) -> RouterResult:
        username = (username or "").strip()
        if not username or not new_secret:
            return RouterResult.failed("Missing username or password", ErrorKind.UNKNOWN)

        def _password(api) -> RouterResult:
            secrets, account = self._find_secret(api, username)
            if account is None:
                return self._not_found(username)
            if not account.secret_id:
                return RouterResult.failed("Router returned secret without .id", ErrorKind.UNKNOWN)

            self._raise_if_cancelled()
            secrets.set(**set_password_payload(account.secret_id, new_secret))
            return RouterResult.ok("PPPoE secret password updated")

        return self._run(descriptor, "set_password", _password)


def get_router_agent(app=None) -> RouterAgent:
    """The agent registered by create_app() (tests swap it for a fake)."""
    if app is None:
        from flask import current_app

        app = current_app
    return app.extensions["router_agent"]
