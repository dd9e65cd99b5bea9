"""
Structured logging for the API and the background workers.

Every event is rendered as one JSON line through structlog, tagged with
the running process (api, view-sync, reconciliation) and stripped of bank
and wallet secrets before it is written.
"""
import logging
import sys
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from payout_engine.config import get_settings

# Keys whose values never reach a log line
SENSITIVE_KEYS = frozenset(
    {
        "account_number",
        "routing_number",
        "access_token",
        "public_token",
        "client_secret",
        "webhook_secret",
        "address",
        "processor_token",
        "wallet_address",
        "funding_source_url",
        "dwolla_customer_url",
    }
)

# Noisy third-party loggers
QUIET_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def mask_value(value: Any) -> str:
    """Keep the last four characters, the way bank masks are shown."""
    text = str(value)
    if len(text) <= 4:
        return "****"
    return f"****{text[-4:]}"


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask sensitive keys at the top level and inside dict values (e.g. `details`)."""
    for key, value in list(event_dict.items()):
        if key in SENSITIVE_KEYS and value is not None:
            event_dict[key] = mask_value(value)
        elif isinstance(value, dict):
            event_dict[key] = {
                k: mask_value(v) if k in SENSITIVE_KEYS and v is not None else v
                for k, v in value.items()
            }
    return event_dict


def process_tagger(process: str):
    """Processor stamping the app, its environment and the process role."""
    settings = get_settings()

    def add_process(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("app_name", settings.app_name)
        event_dict.setdefault("app_env", settings.app_env)
        event_dict.setdefault("process", process)
        return event_dict

    return add_process


def setup_logging(process: str = "api", level: Optional[str] = None) -> None:
    """
    Configure structlog and the root handler.

    Args:
        process: Role of the running process, attached to every event
        level: Override for the configured log level
    """
    settings = get_settings()
    log_level = (level or settings.log_level).upper()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            process_tagger(process),
            redact_sensitive,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "@timestamp", "levelname": "level", "name": "logger"},
        )
    )

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(getattr(logging, log_level))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).info(
        "logging_configured", process=process, log_level=log_level, app_env=settings.app_env
    )
