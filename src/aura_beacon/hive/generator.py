import json
import time
from typing import Any

import nats.errors
import structlog

from .types import Event, Observation

logger = structlog.get_logger(__name__)

EVENT_TOPIC_PREFIX = "aura.beacon.events"
HEARTBEAT_TOPIC = "aura.beacon.heartbeat"


class BeaconGenerator:
    """G - Generator: Emits lifecycle events and heartbeats to NATS."""

    def __init__(self, nats_client: Any = None, beacon_id: str = ""):
        """
        Initialize the generator.

        Args:
            nats_client: An active nats-py client instance, or None to only log.
            beacon_id: Identity stamped on every event.
        """
        self.nc = nats_client
        self.beacon_id = beacon_id

    async def pulse(self, observation: Observation) -> list[Event]:
        """
        Generate events for an observation and emit them.

        Publish failures are logged; they never reach the caller.
        """
        events = []
        now = time.time()

        if observation.event_type:
            payload: dict[str, Any] = {
                "success": observation.success,
                "event_type": observation.event_type,
                "beacon_id": self.beacon_id,
                "correlation_id": observation.correlation_id,
                "timestamp": now,
            }
            if isinstance(observation.data, dict):
                payload["data"] = observation.data
            events.append(
                Event(
                    topic=f"{EVENT_TOPIC_PREFIX}.{observation.event_type}",
                    payload=payload,
                    timestamp=now,
                )
            )

        events.append(
            Event(
                topic=HEARTBEAT_TOPIC,
                payload={
                    "status": "active",
                    "beacon_id": self.beacon_id,
                    "timestamp": now,
                    "service": "aura-beacon",
                },
                timestamp=now,
            )
        )

        if self.nc and self.nc.is_connected:
            for event in events:
                try:
                    await self.nc.publish(
                        event.topic, json.dumps(event.payload, default=str).encode()
                    )
                except (
                    nats.errors.ConnectionClosedError,
                    nats.errors.TimeoutError,
                ) as e:
                    logger.error("nats_publish_failed", topic=event.topic, error=str(e))
        else:
            logger.debug("nats_not_connected_skipping_emit", events=len(events))

        return events
