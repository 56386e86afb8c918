import logging
import sys
from typing import Any, MutableMapping

import structlog
from .settings import Settings, settings as default_settings


def _service_namer(service: str):
    def add_service(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]):
        event_dict.setdefault("service", service)
        return event_dict
    return add_service


def setup_logging(cfg: Settings = default_settings, service: str = "") -> None:
    """
    One structlog pipeline for the HTTP apps, the worker and the CLI.
    `LOG_FORMAT=console` swaps the JSON lines for structlog's dev renderer.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if cfg.log_format == "console"
        else structlog.processors.JSONRenderer()
    )
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        _service_namer(service or cfg.app_name),
    ]
    if cfg.log_format != "console":
        processors += [structlog.processors.EventRenamer("message"), structlog.processors.dict_tracebacks]
    processors.append(renderer)

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stdout)
    # RequestIDMiddleware already logs one line per request
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    # psycopg's pool logs every reconnect attempt at INFO
    logging.getLogger("psycopg.pool").setLevel(max(level, logging.WARNING))
