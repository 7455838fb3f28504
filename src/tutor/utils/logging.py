"""Structured logging utilities."""

import json
import logging
from typing import Any

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = "INFO") -> None:
    """Setup process-wide logging.

    Args:
        level: Logging level name
    """
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


def log_event(event_type: str, data: dict[str, Any]) -> None:
    """Log structured event.

    Args:
        event_type: Event type identifier
        data: Event data dictionary
    """
    logging.getLogger("tutor.events").info(
        json.dumps({"event": event_type, **data}, default=str)
    )
