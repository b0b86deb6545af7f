"""Publishes pipeline state changes to Redis for dashboards and the backend."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis

from services.transcode.domain.state import PipelineState

logger = logging.getLogger(__name__)

STATUS_TTL_SECONDS = 24 * 3600


def status_key(video_id: str) -> str:
    return f"transcode:{video_id}:status"


class JobStatusPublisher:
    """Writes the latest state to a hash and broadcasts it on a per-video channel."""

    def __init__(
        self, redis_host: str = "localhost", redis_port: int = 6379, redis_db: int = 0
    ):
        self.redis_host = redis_host
        self.redis_port = redis_port
        self.redis_db = redis_db

    async def update_status(
        self,
        video_id: str,
        state: PipelineState,
        previous: PipelineState | None = None,
        message: str | None = None,
    ) -> None:
        try:
            redis_client = aioredis.from_url(
                f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}",
                encoding="utf-8",
                decode_responses=True,
            )

            try:
                key = status_key(video_id)
                status_data = {"state": state.value}
                if message:
                    status_data["message"] = message
                await redis_client.hset(key, mapping=status_data)
                await redis_client.expire(key, STATUS_TTL_SECONDS)

                event = {
                    "type": "status",
                    "videoId": video_id,
                    "state": state.value,
                    "previous": previous.value if previous else None,
                    "message": message,
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
                await redis_client.publish(key, json.dumps(event))

                logger.info("Published status for video %s: %s", video_id, state.value)
            finally:
                await redis_client.aclose()

        except Exception as exc:
            logger.error("Error publishing status update for %s: %s", video_id, exc)

    def __call__(
        self,
        video_id: str,
        previous: PipelineState,
        current: PipelineState,
        message: str | None,
    ) -> None:
        asyncio.run(self.update_status(video_id, current, previous, message))
