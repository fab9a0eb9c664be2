"""
Console event sink adapter - Implements EventSink protocol.

This module provides a logging-based implementation of the domain's
event sink port. Each event is written as one INFO line in the JSON
envelope off-chain indexers consume:

    EVENT_JSON:{"standard": "worker-registry", "version": "1.0.0",
                "event": "<name>", "data": [{...}]}
"""

import json
import logging

from src.domain.models import RegistryEvent

logger = logging.getLogger(__name__)

EVENT_STANDARD = "worker-registry"
EVENT_STANDARD_VERSION = "1.0.0"


class ConsoleEventSink:
    """
    Implements EventSink protocol via console logging.

    Uses structural subtyping - no explicit inheritance from Protocol.
    """

    def emit(self, event: RegistryEvent) -> None:
        """
        Log the event envelope at INFO level.

        Args:
            event: Registry event (name + data)
        """
        envelope = {
            "standard": EVENT_STANDARD,
            "version": EVENT_STANDARD_VERSION,
            "event": event.name,
            "data": [event.data],
        }
        logger.info("EVENT_JSON:%s", json.dumps(envelope, separators=(",", ":")))
