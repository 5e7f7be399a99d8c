"""Logging setup shared by the API, services and the expiry sweep."""
from __future__ import annotations

import logging
from typing import Any

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
AUDIT_LOGGER_NAME = "enrollment.audit"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once; later calls only adjust the level."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    root.setLevel(level.upper())


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def audit(event: str, **fields: Any) -> None:
    """Write one monetary/account decision to the audit logger."""
    details = " ".join(f"{key}={value}" for key, value in fields.items())
    logging.getLogger(AUDIT_LOGGER_NAME).info("%s %s", event, details)
