"""Event sinks and the fan-out used by every pipeline."""
from __future__ import annotations

import logging

from .eventlog import EventLog
from .events import DeviceEvent
from .ports import Integration

__all__ = ["LoggingIntegration", "publish_event"]

logger = logging.getLogger(__name__)


class LoggingIntegration:
    """Integration that writes each event to the log.

    Webhook or MQTT delivery is expected to live behind the same
    ``publish`` coroutine in a deployment-specific integration.
    """

    def __init__(self, level: int = logging.INFO) -> None:
        self._level = level

    async def publish(self, event: DeviceEvent) -> None:
        logger.log(
            self._level,
            "device event",
            extra={"extra": {"event": event.event_type.value, "payload": event.as_dict()}},
        )


async def publish_event(event_log: EventLog, integration: Integration, event: DeviceEvent) -> None:
    """Record ``event`` for live subscribers and hand it to the integration.

    Delivery failures are logged; they never fail the frame that caused them.
    """

    event_log.publish(event.dev_eui, event.event_type, event.as_dict())
    try:
        await integration.publish(event)
    except Exception:
        logger.exception(
            "integration publish failed",
            extra={"extra": {"dev_eui": event.dev_eui.hex(), "event": event.event_type.value}},
        )
