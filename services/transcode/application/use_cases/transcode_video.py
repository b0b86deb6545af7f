from __future__ import annotations

import logging
import time
from pathlib import Path
from tempfile import TemporaryDirectory

from services.transcode.application.encoding import VariantEncodeCoordinator
from services.transcode.application.interfaces import (
    EncodeEngine,
    StatusListener,
    StorageGateway,
)
from services.transcode.application.notifications import CompletionNotifier
from services.transcode.application.playlists import PlaylistAssembler
from services.transcode.application.publishing import ArtifactPublisher
from services.transcode.application.thumbnails import ThumbnailGenerator
from services.transcode.domain.artifacts import UploadManifest
from services.transcode.domain.errors import InvalidJobError, TransientIOError
from services.transcode.domain.job import JobResult, TranscodeJob
from services.transcode.domain.segmentation import (
    SegmentationPolicy,
    UniformSegmentation,
    plan_segments,
)
from services.transcode.domain.state import PipelineState, PipelineStateMachine

logger = logging.getLogger(__name__)


class TranscodeVideoUseCase:
    def __init__(
        self,
        *,
        storage: StorageGateway,
        engine: EncodeEngine,
        coordinator: VariantEncodeCoordinator,
        assembler: PlaylistAssembler,
        thumbnails: ThumbnailGenerator | None,
        publisher: ArtifactPublisher,
        notifier: CompletionNotifier,
        segmentation_policy: SegmentationPolicy | None = None,
        work_root: Path | None = None,
        status_listener: StatusListener | None = None,
    ) -> None:
        self._storage = storage
        self._engine = engine
        self._coordinator = coordinator
        self._assembler = assembler
        self._thumbnails = thumbnails
        self._publisher = publisher
        self._notifier = notifier
        self._policy = segmentation_policy or UniformSegmentation()
        self._work_root = work_root
        self._status_listener = status_listener

    def execute(self, job: TranscodeJob) -> JobResult:
        state = PipelineStateMachine(job.video_id, self._status_listener)
        started = time.perf_counter()
        try:
            with TemporaryDirectory(prefix="transcode-", dir=self._work_root) as tmpdir:
                result = self._run(job, Path(tmpdir), state)
        except Exception as exc:
            state.fail(str(exc))
            logger.error(
                "Transcode of %s failed after %.1fs: %s",
                job.video_id,
                time.perf_counter() - started,
                exc,
            )
            raise
        logger.info(
            "Transcode of %s completed in %.1fs",
            job.video_id,
            time.perf_counter() - started,
        )
        return result

    def _run(self, job: TranscodeJob, workdir: Path, state: PipelineStateMachine) -> JobResult:
        out_dir = (workdir / "out").resolve()
        hls_dir = _inside(out_dir, job.hls_path)
        thumbs_dir = _inside(out_dir, job.thumbnails_path)
        input_path = workdir / "input"
        self._download(job, input_path)

        probe = self._engine.probe(input_path)
        logger.info(
            "Probed %s: %.2fs %sx%s @ %s fps, audio=%s",
            job.video_id,
            probe.duration_seconds,
            probe.width,
            probe.height,
            probe.fps,
            probe.has_audio,
        )

        policy = self._policy
        if job.segment_seconds is not None and isinstance(policy, UniformSegmentation):
            policy = UniformSegmentation(base_segment_seconds=job.segment_seconds)
        plan = plan_segments(probe.duration_seconds, probe.fps, policy)
        logger.info(
            "Segmentation plan for %s: %d boundaries, gop=%d, keyint_min=%d",
            job.video_id,
            len(plan.boundaries),
            plan.gop_size,
            plan.min_keyframe_interval,
        )

        results = self._coordinator.encode_all(
            input_path,
            plan,
            job.ladder,
            probe,
            hls_dir,
            preset=job.preset,
            crf=job.crf,
        )
        manifest = self._assembler.assemble(results, hls_dir)

        thumbnail_path = None
        if self._thumbnails is not None:
            thumbs = self._thumbnails.generate(
                input_path,
                thumbs_dir,
                probe,
                scratch_dir=workdir,
            )
            if thumbs is not None and thumbs.cover is not None:
                thumbnail_path = f"{job.thumbnails_path}/{thumbs.cover.name}"

        state.transition(PipelineState.UPLOADING)
        uploads = UploadManifest()
        self._publisher.publish(out_dir, job.asset_key, uploads)

        result = JobResult(
            video_id=job.video_id,
            organization_id=job.organization_id,
            asset_key=job.asset_key,
            hls_master_path=manifest.path.relative_to(out_dir).as_posix(),
            duration_seconds=probe.duration_seconds,
            thumbnail_path=thumbnail_path,
        )
        state.transition(PipelineState.NOTIFYING)
        return self._notifier.notify(job, result, uploads, state)

    def _download(self, job: TranscodeJob, destination: Path) -> None:
        started = time.perf_counter()
        try:
            self._storage.download(job.source_path, destination.as_posix())
        except TransientIOError:
            raise
        except Exception as exc:
            raise TransientIOError(
                f"Download of {job.source_path} failed: {exc}"
            ) from exc
        logger.info(
            "Downloaded %s (%d bytes) in %.1fs",
            job.source_path,
            destination.stat().st_size,
            time.perf_counter() - started,
        )


def _inside(root: Path, relative: str) -> Path:
    """Resolve an output directory, refusing anything outside ``root``."""
    target = (root / relative).resolve()
    if not target.is_relative_to(root.resolve()) or target == root.resolve():
        raise InvalidJobError(f"Output directory {relative!r} escapes the asset root")
    return target
