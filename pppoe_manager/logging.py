# pppoe_manager/logging.py
from __future__ import annotations

import logging
import re
import sys
from typing import Optional

# password=..., api_password: ..., "password": "..."
_SECRET_RE = re.compile(r"""(?i)(["']?(?:api_)?password["']?\s*[:=]\s*["']?)([^\s"',}]+)""")

_LIBRARY_LEVELS = {
    "werkzeug": logging.WARNING,
    "apscheduler": logging.INFO,
    "sqlalchemy.engine": logging.WARNING,
    "routeros_api": logging.WARNING,
}


class RedactSecretsFilter(logging.Filter):
    """Mask password values before a record reaches any handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = _SECRET_RE.sub(r"\1***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(debug: bool = False, level: Optional[str] = None) -> None:
    """
    Central logging configuration for the whole service.

    - stdout only (container/systemd collects it)
    - pipe-separated lines: time | level | logger | message
    - LOG_LEVEL overrides the debug/info default
    - pppoe.* loggers (router agent, expiry loop, sync) inherit from root
    """
    resolved = logging.DEBUG if debug else logging.INFO
    if level:
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            raise RuntimeError(f"Unknown LOG_LEVEL: {level!r}")

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RedactSecretsFilter())

    logging.basicConfig(
        level=resolved,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[handler],
        force=True,  # replace Flask/Gunicorn handlers
    )

    for name, lib_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(lib_level)
