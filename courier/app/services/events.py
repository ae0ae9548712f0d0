"""
Parcel transition events.

The workflow engine emits exactly one event per applied transition. The
notification service subscribes to the Redis channel and turns events into
user-facing alerts; formatting and delivery are its business, not ours.
"""

import json
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional

from redis.exceptions import RedisError

from courier.app.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransitionEvent:
    parcel_id: int
    tracking_number: str
    action: str
    status: str
    previous_status: Optional[str]
    actor_id: Optional[int]
    driver_id: Optional[int]
    timestamp: datetime

    def to_json(self) -> str:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return json.dumps(payload)


class EventPublisher:
    """Publishes transition events on a Redis pub/sub channel."""

    def __init__(self, redis_client, channel: str = settings.parcel_events_channel):
        self.redis = redis_client
        self.channel = channel

    async def publish(self, event: TransitionEvent) -> bool:
        """
        Publish an event. Returns False if Redis is unreachable.

        Delivery is best effort: the transition is already committed and
        the audit trail holds the authoritative record.
        """
        try:
            await self.redis.publish(self.channel, event.to_json())
            return True
        except (RedisError, OSError) as exc:
            logger.warning(
                "Failed to publish parcel event",
                extra={
                    "parcel_id": event.parcel_id,
                    "status": event.status,
                    "error": str(exc),
                },
            )
            return False
