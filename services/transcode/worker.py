import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Optional

from redis import Redis
from rq import Retry

from .application.encoding import VariantEncodeCoordinator
from .application.interfaces import CallbackClient, EncodeEngine, StorageGateway
from .application.notifications import BackoffPolicy, CompletionNotifier
from .application.playlists import PlaylistAssembler
from .application.publishing import ArtifactPublisher
from .application.thumbnails import ThumbnailGenerator
from .application.use_cases import TranscodeVideoUseCase
from .config import TranscodeConfig, load_config
from .domain.job import TranscodeJob
from .domain.segmentation import (
    HybridSegmentation,
    SegmentationPolicy,
    UniformSegmentation,
)
from .infrastructure.callback import create_callback_client
from .infrastructure.ffmpeg import create_encode_engine
from .infrastructure.queue import (
    create_queue as build_queue,
    create_redis_connection,
    create_worker as build_worker,
)
from .infrastructure.sprites import PillowSpriteComposer
from .infrastructure.status_publisher import JobStatusPublisher
from .infrastructure.storage import create_storage_gateway
from .listener import listen_for_transcode_requests

logger = logging.getLogger(__name__)


@dataclass
class WorkerContext:
    """Clients built once per worker process and shared by every job."""

    storage: StorageGateway
    engine: EncodeEngine
    callback_client: Optional[CallbackClient]
    status_publisher: Optional[JobStatusPublisher]
    redis: Redis


_CONFIG: TranscodeConfig | None = None
# rq imports job functions by dotted path, so the context has to be reachable
# from module scope; it is only ever assigned through init_context.
_CONTEXT: WorkerContext | None = None


def get_config() -> TranscodeConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG


def build_context(cfg: TranscodeConfig) -> WorkerContext:
    status_publisher = None
    if cfg.publish_status:
        status_publisher = JobStatusPublisher(
            redis_host=cfg.redis_host,
            redis_port=cfg.redis_port,
            redis_db=cfg.redis_db,
        )
    return WorkerContext(
        storage=create_storage_gateway(cfg),
        engine=create_encode_engine(cfg),
        callback_client=create_callback_client(cfg),
        status_publisher=status_publisher,
        redis=create_redis_connection(cfg),
    )


def init_context(context: WorkerContext | None = None) -> WorkerContext:
    global _CONTEXT
    _CONTEXT = context or build_context(get_config())
    return _CONTEXT


def get_context() -> WorkerContext:
    if _CONTEXT is None:
        return init_context()
    return _CONTEXT


def segmentation_policy_for(cfg: TranscodeConfig) -> SegmentationPolicy:
    if cfg.segmentation_policy == "hybrid":
        return HybridSegmentation(
            initial_segment_seconds=cfg.hybrid_initial_segment_seconds,
            initial_segment_count=cfg.hybrid_initial_segment_count,
            subsequent_segment_seconds=cfg.hybrid_subsequent_segment_seconds,
        )
    return UniformSegmentation(base_segment_seconds=cfg.segment_seconds)


def build_use_case(ctx: WorkerContext, cfg: TranscodeConfig) -> TranscodeVideoUseCase:
    thumbnails = ThumbnailGenerator(
        engine=ctx.engine,
        composer=PillowSpriteComposer(),
        max_width=cfg.thumbnail_max_width,
        columns=cfg.sprite_columns,
        rows=cfg.sprite_rows,
        tile_width=cfg.sprite_tile_width,
        tile_height=cfg.sprite_tile_height,
    )
    notifier = CompletionNotifier(
        callback_client=ctx.callback_client,
        storage=ctx.storage,
        policy=BackoffPolicy(
            max_attempts=cfg.callback_max_attempts,
            base_delay_seconds=cfg.callback_base_delay_seconds,
            multiplier=cfg.callback_backoff_multiplier,
        ),
    )
    return TranscodeVideoUseCase(
        storage=ctx.storage,
        engine=ctx.engine,
        coordinator=VariantEncodeCoordinator(
            engine=ctx.engine,
            max_concurrency=cfg.encode_concurrency,
            preset=cfg.encode_preset,
            crf=cfg.encode_crf,
        ),
        assembler=PlaylistAssembler(),
        thumbnails=thumbnails,
        publisher=ArtifactPublisher(
            storage=ctx.storage, max_workers=cfg.upload_concurrency
        ),
        notifier=notifier,
        segmentation_policy=segmentation_policy_for(cfg),
        work_root=Path(cfg.work_dir) if cfg.work_dir else None,
        status_listener=ctx.status_publisher,
    )


def process_transcode(payload: Mapping[str, Any]) -> dict[str, Any]:
    """rq entry point: run one transcode job and return its completion payload."""
    cfg = get_config()
    job = TranscodeJob.from_payload(
        payload, default_audio_bitrate_kbps=cfg.audio_bitrate_kbps
    )
    logger.info("Processing video %s from %s", job.video_id, job.source_path)
    result = build_use_case(get_context(), cfg).execute(job)
    logger.info("Completed video %s -> %s", job.video_id, result.hls_master_path)
    return result.to_payload()


def enqueue(payload: Mapping[str, Any]):
    cfg = get_config()
    # Validate before queueing so malformed requests never reach a worker.
    job = TranscodeJob.from_payload(
        payload, default_audio_bitrate_kbps=cfg.audio_bitrate_kbps
    )
    queue = build_queue(cfg, connection=get_context().redis)
    retry = Retry(max=cfg.job_max_retries) if cfg.job_max_retries > 0 else None
    rq_job = queue.enqueue(
        process_transcode,
        dict(payload),
        retry=retry,
        job_timeout=cfg.job_timeout_seconds,
        job_id=f"transcode-{job.video_id}",
    )
    logger.info("Enqueued job id=%s for video=%s", rq_job.id, job.video_id)
    return rq_job


def run_worker(queue_name: Optional[str] = None):
    cfg = get_config()
    ctx = init_context()
    worker = build_worker(cfg, queue_name=queue_name, connection=ctx.redis)
    logger.info("Starting worker for queue: %s", queue_name or cfg.redis_queue_name)
    worker.work()


def run_worker_service(
    queue_name: Optional[str] = None,
    enable_listener: bool = True,
):
    stop_event = threading.Event()
    cfg = get_config()

    listener_thread = None
    if enable_listener:
        listener_thread = threading.Thread(
            target=listen_for_transcode_requests,
            args=(cfg, enqueue, stop_event),
            daemon=True,
        )
        listener_thread.start()
        logger.info("Started listener thread")

    try:
        run_worker(queue_name=queue_name)
    except KeyboardInterrupt:
        logger.info("Shutting down worker...")
    finally:
        stop_event.set()
        if listener_thread and listener_thread.is_alive():
            listener_thread.join(timeout=2)
