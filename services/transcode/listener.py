from __future__ import annotations

import json
import logging
from typing import Callable

import redis

from .config import TranscodeConfig
from .domain.errors import InvalidJobError
from .domain.job import TranscodeJob

logger = logging.getLogger(__name__)


def listen_for_transcode_requests(
    config: TranscodeConfig,
    enqueue_fn: Callable[[dict[str, object]], object],
    stop_event=None,
) -> None:
    client = redis.Redis(
        host=config.redis_host, port=config.redis_port, db=config.redis_db
    )
    pubsub = client.pubsub()
    pubsub.subscribe(config.redis_channel)
    logger.info("Listening for transcode requests on channel %r", config.redis_channel)
    for message in pubsub.listen():
        if stop_event and stop_event.is_set():
            break
        if message.get("type") != "message":
            continue
        try:
            payload = json.loads(message["data"])
        except (TypeError, json.JSONDecodeError):
            logger.warning("Ignoring non-JSON message on %s", config.redis_channel)
            continue
        if not isinstance(payload, dict):
            continue
        try:
            job = TranscodeJob.from_payload(
                payload, default_audio_bitrate_kbps=config.audio_bitrate_kbps
            )
        except InvalidJobError as exc:
            logger.warning("Rejected transcode request: %s", exc)
            continue
        logger.info("New transcode request for video %s", job.video_id)
        enqueue_fn(payload)
    pubsub.close()
