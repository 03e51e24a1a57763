"""Control messages sent by client pages to the worker."""

import logging
from collections.abc import Mapping
from enum import Enum

logger = logging.getLogger(__name__)


class Command(Enum):
    SKIP_WAITING = "SKIP_WAITING"


def parse_command(data: object) -> Command | None:
    """Extract a recognized command from a message payload.

    Malformed payloads and unknown commands return None; they are never an
    error for the sender.
    """
    if not data or not isinstance(data, Mapping):
        logger.debug("Ignoring malformed control message: %r", data)
        return None

    try:
        return Command(data.get("type"))
    except (TypeError, ValueError):
        logger.debug("Ignoring unknown control message type: %r", data.get("type"))
        return None
