from __future__ import annotations

import os
import socket

from redis import Redis
from rq import Queue, Worker as RQWorker

from ..config import TranscodeConfig

HEALTH_CHECK_INTERVAL_SECONDS = 30


def create_redis_connection(config: TranscodeConfig) -> Redis:
    # A worker's connection sits idle for as long as an encode runs.
    return Redis(
        host=config.redis_host,
        port=config.redis_port,
        db=config.redis_db,
        socket_keepalive=True,
        health_check_interval=HEALTH_CHECK_INTERVAL_SECONDS,
    )


def queue_names(config: TranscodeConfig, queue_name: str | None = None) -> list[str]:
    """Comma-separated queue names, highest priority first."""
    raw = queue_name or config.redis_queue_name
    names = [name.strip() for name in raw.split(",") if name.strip()]
    return names or [config.redis_queue_name]


def worker_name(config: TranscodeConfig) -> str:
    return f"{config.redis_queue_name}.{socket.gethostname()}.{os.getpid()}"


def create_queue(
    config: TranscodeConfig,
    queue_name: str | None = None,
    connection: Redis | None = None,
) -> Queue:
    return Queue(
        queue_names(config, queue_name)[0],
        connection=connection or create_redis_connection(config),
        default_timeout=config.job_timeout_seconds,
    )


def create_worker(
    config: TranscodeConfig,
    queue_name: str | None = None,
    connection: Redis | None = None,
) -> RQWorker:
    redis_conn = connection or create_redis_connection(config)
    queues = [
        Queue(name, connection=redis_conn, default_timeout=config.job_timeout_seconds)
        for name in queue_names(config, queue_name)
    ]
    return RQWorker(queues, connection=redis_conn, name=worker_name(config))
