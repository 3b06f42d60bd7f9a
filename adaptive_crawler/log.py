"""structlog configuration.

Events are emitted as one JSON object per line, e.g.::

    {"event": "strategy_selected", "domain": "example.com", "method": "static", ...}
"""

from __future__ import annotations

import json
import logging
from functools import partial

import structlog

get_logger = structlog.get_logger

_configured = False


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Configure stdlib logging and structlog (idempotent)."""
    global _configured
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(message)s")
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))
    if _configured:
        return
    renderer = (
        structlog.processors.JSONRenderer(serializer=partial(json.dumps, ensure_ascii=False, default=str))
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True
