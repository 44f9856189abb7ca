import logging
import re
from typing import Any, Dict

import structlog

# Keys whose values never reach the log output
SECRET_KEYS = {
    "authorization",
    "api-key",
    "api_key",
    "sso_shared_secret",
    "webhook_shared_secret",
    "jwt_secret_key",
    "sig",
    "signature",
    "x-discourse-event-signature",
    "token",
    "cookie",
}


def _configure_stdlib_logging() -> None:
    logging.basicConfig(
        format="%(message)s",
        level=logging.INFO,
    )


def redact_secrets(_logger, _name, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    for k in list(event_dict.keys()):
        if str(k).lower() in SECRET_KEYS:
            event_dict[k] = "[REDACTED]"
    for k, v in list(event_dict.items()):
        if isinstance(v, str) and "Bearer " in v:
            event_dict[k] = re.sub(r"Bearer\s+[A-Za-z0-9\-_.=:+/]+", "Bearer [REDACTED]", v)
    return event_dict


def configure_structlog() -> None:
    _configure_stdlib_logging()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)
