"""Push notification publisher (Redis pub/sub, consumed by the delivery service)."""

from __future__ import annotations

import structlog

from shared.schemas.notifications import PushNotification

logger = structlog.get_logger()


class Notifier:
    def __init__(self, redis_client, channel: str = "notifications:push"):
        self.redis = redis_client
        self.channel = channel

    async def send(self, notification: PushNotification) -> None:
        """Publish one notification. Raises if Redis rejects the publish."""
        await self.redis.publish(self.channel, notification.model_dump_json())
        logger.info(
            "notification_published",
            channel=self.channel,
            family_id=notification.family_id,
            kind=notification.kind,
        )
