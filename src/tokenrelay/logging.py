import logging
from typing import Any

import structlog

_SECRET_KEYS = frozenset({"api_key", "x-api-key", "authorization", "anthropic_api_key"})


def redact_secrets(
    logger: "Any", method_name: "str", event_dict: "dict[str, Any]"
) -> "dict[str, Any]":
    """
    masks credential-like fields so a careless log call can never
    print the provider key.
    """
    for key in event_dict.keys() & _SECRET_KEYS:
        event_dict[key] = "***"
    return event_dict


def setup_logging(level: "str") -> "None":
    """
    maps string log level to logging module levels and configures
    structlog with a console renderer, timestamping and secret
    redaction.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
    )
    # httpx logs every request line at INFO
    logging.getLogger("httpx").setLevel(max(numeric_level, logging.WARNING))
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            redact_secrets,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
