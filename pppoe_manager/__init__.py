# pppoe_manager/__init__.py
from __future__ import annotations

import atexit
import os
from pathlib import Path
from typing import Any, Mapping, Optional

from dotenv import load_dotenv
from flask import Flask

from .logging import setup_logging


def _load_env() -> None:
    """
    Load .env for LOCAL DEV only, without overriding real environment variables.

    Rule:
    - If DATABASE_URL is already set (CI/containers/migrations), do NOT read .env.
    """
    if os.getenv("DATABASE_URL"):
        return

    project_root = Path(__file__).resolve().parent.parent
    env_path = project_root / ".env"
    if env_path.exists():
        load_dotenv(dotenv_path=env_path, override=False)


def _env_flag(name: str, default: bool = True) -> bool:
    """Parse env bools like true/false/1/0/yes/no/on/off."""
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
    # ---------------------------------------------------------
    # 1) Load env BEFORE importing Config (local dev only)
    # ---------------------------------------------------------
    _load_env()

    # ---------------------------------------------------------
    # 2) Import config AFTER env is loaded
    # ---------------------------------------------------------
    from .config import Config

    # ---------------------------------------------------------
    # 3) Create app
    # ---------------------------------------------------------
    app = Flask(__name__, instance_relative_config=False)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    # ---------------------------------------------------------
    # 4) Logging
    # ---------------------------------------------------------
    setup_logging(debug=bool(app.config.get("DEBUG", False)), level=app.config.get("LOG_LEVEL"))

    # ---------------------------------------------------------
    # 5) Extensions
    # ---------------------------------------------------------
    from .extensions import db, limiter, migrate

    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    from . import models  # noqa: F401  (register tables for create_all / flask db)

    # ---------------------------------------------------------
    # 6) Router agent (one per app; sessions are per call)
    # ---------------------------------------------------------
    from .router_agent import RouterAgent

    app.extensions["router_agent"] = RouterAgent.from_config(app.config)

    # ---------------------------------------------------------
    # 7) Blueprints + CLI
    # ---------------------------------------------------------
    from .api import api as api_bp
    from . import cli as cli_module

    app.register_blueprint(api_bp, url_prefix="/api")
    cli_module.init_app(app)

    @app.get("/_ping")
    def ping():
        return {"service": "pppoe-manager", "status": "running"}

    # =========================================================
    # 8) APScheduler: expiry enforcement (safe gating)
    # =========================================================
    from .scheduler import ExpirationScheduler

    enforcer = ExpirationScheduler.from_app(app, app.extensions["router_agent"])
    app.extensions["expiration_scheduler"] = enforcer

    def _should_start_scheduler() -> bool:
        """
        Start scheduler only when:
        - Enabled (SCHEDULER_ENABLED=true)
        - NOT testing
        - NOT running via Flask CLI commands (db upgrade/router resync/etc.)
        - NOT the debug reloader parent process
        """
        if not app.config.get("SCHEDULER_ENABLED", False) or app.config.get("TESTING", False):
            return False

        if _env_flag("FLASK_RUN_FROM_CLI", False):
            return False

        if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
            return False

        return True

    if _should_start_scheduler():
        enforcer.start()
        atexit.register(enforcer.stop, wait=False)
    else:
        app.logger.info(
            "Scheduler NOT started (SCHEDULER_ENABLED=%s, FLASK_RUN_FROM_CLI=%s, debug=%s, WERKZEUG_RUN_MAIN=%s).",
            app.config.get("SCHEDULER_ENABLED", False),
            os.getenv("FLASK_RUN_FROM_CLI", ""),
            app.debug,
            os.getenv("WERKZEUG_RUN_MAIN", ""),
        )

    return app
