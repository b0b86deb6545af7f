from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Sequence

from services.transcode.application.interfaces import EncodeEngine
from services.transcode.domain.errors import EncodeEngineFailure
from services.transcode.domain.job import VariantSpec
from services.transcode.domain.media import (
    AUDIO_CODEC_TAG,
    EncodeOutcome,
    EncodeResult,
    SourceProbe,
    VariantEncodeParams,
    estimate_bandwidth,
    select_h264_tier,
)
from services.transcode.domain.segmentation import SegmentationPlan

logger = logging.getLogger(__name__)

DEFAULT_PRESET = "veryfast"


def playlist_name(variant: VariantSpec) -> str:
    return f"variant_{variant.key}.m3u8"


def segment_pattern(variant: VariantSpec) -> str:
    return f"segment_{variant.key}_%03d.ts"


class VariantEncodeCoordinator:
    """Encodes every rung in parallel; all rungs succeed or the stage fails."""

    def __init__(
        self,
        *,
        engine: EncodeEngine,
        max_concurrency: int | None = None,
        preset: str = DEFAULT_PRESET,
        crf: int | None = None,
        audio_codec: str = "aac",
    ) -> None:
        self._engine = engine
        self._max_concurrency = max_concurrency
        self._preset = preset
        self._crf = crf
        self._audio_codec = audio_codec

    def build_params(
        self,
        variant: VariantSpec,
        *,
        plan: SegmentationPlan,
        probe: SourceProbe,
        output_dir: Path,
        preset: str | None = None,
        crf: int | None = None,
    ) -> VariantEncodeParams:
        tier = select_h264_tier(variant.height, probe.fps)
        channels = max(1, min(2, probe.audio_channels or 2))
        return VariantEncodeParams(
            variant=variant,
            playlist_path=output_dir / playlist_name(variant),
            segment_pattern=output_dir / segment_pattern(variant),
            h264_level=tier.level,
            video_codec_tag=tier.codec_tag,
            preset=preset or self._preset,
            crf=crf if crf is not None else self._crf,
            gop_size=plan.gop_size,
            min_keyframe_interval=plan.min_keyframe_interval,
            force_keyframes=plan.force_keyframe_expression(),
            hls_time=plan.target_segment_seconds,
            include_audio=probe.has_audio,
            audio_codec=self._audio_codec,
            audio_channels=channels,
        )

    def encode_all(
        self,
        source: Path,
        plan: SegmentationPlan,
        variants: Sequence[VariantSpec],
        probe: SourceProbe,
        output_dir: Path,
        *,
        preset: str | None = None,
        crf: int | None = None,
    ) -> list[EncodeResult]:
        if not variants:
            raise EncodeEngineFailure("No variants to encode")
        output_dir.mkdir(parents=True, exist_ok=True)

        params = [
            self.build_params(
                v, plan=plan, probe=probe, output_dir=output_dir, preset=preset, crf=crf
            )
            for v in variants
        ]
        workers = max(1, min(self._max_concurrency or len(params), len(params)))
        cancel_event = threading.Event()
        started = time.perf_counter()
        logger.info(
            "Encoding %d variants (%s) with concurrency %d",
            len(params),
            ", ".join(p.variant_key for p in params),
            workers,
        )

        outcomes: dict[str, EncodeOutcome] = {}
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="encode"
        ) as executor:
            futures: dict[Future, VariantEncodeParams] = {
                executor.submit(self._run_one, source, p, cancel_event): p
                for p in params
            }
            pending = set(futures)
            failure: EncodeEngineFailure | None = None
            while pending and failure is None:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    p = futures[future]
                    outcome = _outcome_of(future, p)
                    outcomes[p.variant_key] = outcome
                    if not outcome.succeeded and failure is None:
                        failure = EncodeEngineFailure(
                            f"Encode failed for {p.variant_key}: {outcome.error}",
                            variant_key=p.variant_key,
                        )

            if failure is not None:
                cancel_event.set()
                for future in pending:
                    future.cancel()
                logger.error(
                    "%s; cancelling %d remaining encodes", failure, len(pending)
                )
                raise failure

        results = [self._to_result(p, probe) for p in params]
        logger.info(
            "Encoded %d variants in %.1fs",
            len(results),
            time.perf_counter() - started,
        )
        return results

    def _run_one(
        self,
        source: Path,
        params: VariantEncodeParams,
        cancel_event: threading.Event,
    ) -> EncodeOutcome:
        if cancel_event.is_set():
            return EncodeOutcome.cancellation(params.variant_key)
        started = time.perf_counter()
        logger.info(
            "Encoding %s %dx%d @ %dk",
            params.variant_key,
            params.variant.width,
            params.variant.height,
            params.variant.video_bitrate_kbps,
        )
        outcome = self._engine.encode_variant(source, params, cancel_event)
        if outcome.succeeded:
            logger.info(
                "Finished %s in %.1fs",
                params.variant_key,
                time.perf_counter() - started,
            )
        return outcome

    def _to_result(self, params: VariantEncodeParams, probe: SourceProbe) -> EncodeResult:
        variant = params.variant
        prefix = params.segment_pattern.name.split("%", 1)[0]
        chunk_count = sum(
            1 for _ in params.segment_pattern.parent.glob(f"{prefix}*.ts")
        )
        return EncodeResult(
            variant_key=variant.key,
            width=variant.width,
            height=variant.height,
            local_playlist_path=params.playlist_path,
            bandwidth_estimate=estimate_bandwidth(
                variant.video_bitrate_kbps, variant.audio_bitrate_kbps
            ),
            video_codec_tag=params.video_codec_tag,
            audio_codec_tag=AUDIO_CODEC_TAG if probe.has_audio else None,
            chunk_count=chunk_count,
        )


def _outcome_of(future: Future, params: VariantEncodeParams) -> EncodeOutcome:
    try:
        return future.result()
    except Exception as exc:
        return EncodeOutcome.failure(params.variant_key, str(exc) or type(exc).__name__)
