from __future__ import annotations

import json
import logging
import subprocess
import threading
from pathlib import Path
from typing import Any, Mapping

from services.transcode.application.interfaces import EncodeEngine
from services.transcode.config import TranscodeConfig
from services.transcode.domain.errors import SourceProbeError, ThumbnailFailure
from services.transcode.domain.media import (
    EncodeOutcome,
    SourceProbe,
    VariantEncodeParams,
)

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.5
_TERMINATE_GRACE_SECONDS = 5.0

def parse_frame_rate(raw: str | None) -> float | None:
    if not raw:
        return None
    if "/" in raw:
        num, den = raw.split("/", 1)
        try:
            numerator, denominator = float(num), float(den)
        except ValueError:
            return None
        return numerator / denominator if denominator else None
    try:
        return float(raw)
    except ValueError:
        return None


def parse_probe_output(data: Mapping[str, Any]) -> SourceProbe:
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)
    fmt = data.get("format") or {}
    try:
        duration = float(fmt.get("duration") or 0)
    except (TypeError, ValueError):
        duration = 0.0
    return SourceProbe(
        duration_seconds=duration,
        width=video.get("width") if video else None,
        height=video.get("height") if video else None,
        fps=parse_frame_rate(video.get("r_frame_rate")) if video else None,
        has_audio=audio is not None,
        audio_channels=audio.get("channels") if audio else None,
        audio_sample_rate=(
            int(audio["sample_rate"]) if audio and audio.get("sample_rate") else None
        ),
    )


def _seconds(value: float) -> str:
    return f"{value:g}"


def build_hls_command(
    binary: str,
    source: Path,
    params: VariantEncodeParams,
    *,
    log_level: str = "error",
) -> list[str]:
    variant = params.variant
    cmd = [
        binary,
        "-y",
        "-hide_banner",
        "-loglevel",
        log_level,
        "-i",
        source.as_posix(),
        "-threads",
        "0",
        "-filter_threads",
        "0",
        "-max_muxing_queue_size",
        "1024",
        "-c:v",
        "libx264",
        "-vf",
        f"scale={variant.width}:{variant.height}",
        "-sws_flags",
        "fast_bilinear",
        "-preset",
        params.preset,
    ]
    if params.crf is not None:
        cmd.extend(["-crf", str(params.crf)])
    else:
        cmd.extend(["-b:v", f"{variant.video_bitrate_kbps}k"])
    cmd.extend(
        [
            "-profile:v",
            "main",
            "-level:v",
            params.h264_level,
            "-sc_threshold",
            "0",
            "-g",
            str(params.gop_size),
            "-keyint_min",
            str(params.min_keyframe_interval),
            "-force_key_frames",
            params.force_keyframes,
            "-pix_fmt",
            "yuv420p",
            "-map",
            "0:v:0",
        ]
    )
    if params.include_audio:
        cmd.extend(
            [
                "-map",
                "0:a:0?",
                "-c:a",
                params.audio_codec,
                "-b:a",
                f"{variant.audio_bitrate_kbps}k",
                "-ar",
                str(params.audio_sample_rate),
                "-ac",
                str(params.audio_channels),
            ]
        )
    else:
        cmd.append("-an")
    cmd.extend(
        [
            "-sn",
            "-dn",
            "-map_metadata",
            "-1",
            "-map_chapters",
            "-1",
            "-f",
            "hls",
            "-hls_time",
            _seconds(params.hls_time),
            "-hls_playlist_type",
            "vod",
            "-hls_flags",
            "independent_segments",
            "-hls_segment_type",
            "mpegts",
            "-hls_list_size",
            "0",
            "-hls_segment_filename",
            params.segment_pattern.as_posix(),
            params.playlist_path.as_posix(),
        ]
    )
    return cmd


class FFmpegEncodeEngine(EncodeEngine):
    def __init__(
        self,
        *,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
        log_level: str = "error",
    ) -> None:
        self._ffmpeg = ffmpeg_binary
        self._ffprobe = ffprobe_binary
        self._log_level = log_level

    def probe(self, source: Path) -> SourceProbe:
        cmd = [
            self._ffprobe,
            "-v",
            "error",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            source.as_posix(),
        ]
        result = subprocess.run(cmd, capture_output=True)
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="ignore")
            raise SourceProbeError(
                f"ffprobe failed for {source.name}: {stderr.strip() or 'unknown error'}"
            )
        try:
            data = json.loads(result.stdout or b"{}")
        except json.JSONDecodeError as exc:
            raise SourceProbeError(f"ffprobe returned invalid JSON for {source.name}") from exc
        return parse_probe_output(data)

    def encode_variant(
        self,
        source: Path,
        params: VariantEncodeParams,
        cancel_event: threading.Event,
    ) -> EncodeOutcome:
        params.playlist_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = build_hls_command(
            self._ffmpeg, source, params, log_level=self._log_level
        )
        logger.debug("ffmpeg start %s: %s", params.variant_key, " ".join(cmd))
        process = subprocess.Popen(
            cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE
        )
        # Drain stderr off-thread so a chatty encoder cannot block on a full pipe.
        stderr_chunks: list[bytes] = []
        reader = threading.Thread(
            target=lambda: stderr_chunks.append(process.stderr.read()),
            daemon=True,
        )
        reader.start()
        while True:
            try:
                returncode = process.wait(timeout=_POLL_SECONDS)
                break
            except subprocess.TimeoutExpired:
                if cancel_event.is_set():
                    self._terminate(process)
                    reader.join(timeout=_TERMINATE_GRACE_SECONDS)
                    logger.info("ffmpeg cancelled for %s", params.variant_key)
                    return EncodeOutcome.cancellation(params.variant_key)
        reader.join(timeout=_TERMINATE_GRACE_SECONDS)

        if returncode != 0:
            stderr = b"".join(stderr_chunks).decode("utf-8", errors="ignore").strip()
            logger.error(
                "ffmpeg error variant %s (exit %d): %s",
                params.variant_key,
                returncode,
                stderr[-2000:],
            )
            return EncodeOutcome.failure(
                params.variant_key,
                f"ffmpeg exited with {returncode}: {stderr[-500:] or 'unknown error'}",
            )
        return EncodeOutcome.success(params.variant_key)

    def extract_frame(
        self,
        source: Path,
        destination: Path,
        *,
        at_seconds: float,
        width: int | None = None,
        height: int | None = None,
    ) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self._ffmpeg,
            "-y",
            "-hide_banner",
            "-loglevel",
            self._log_level,
            "-ss",
            f"{max(0.0, at_seconds):.3f}",
            "-i",
            source.as_posix(),
            "-frames:v",
            "1",
        ]
        if width and height:
            cmd.extend(["-vf", f"scale={width}:{height}"])
        elif width:
            # Keep the aspect ratio; -2 keeps the height even.
            cmd.extend(["-vf", f"scale='min({width},iw)':-2"])
        cmd.extend(["-qscale:v", "2", destination.as_posix()])
        result = subprocess.run(cmd, capture_output=True)
        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="ignore")
            raise ThumbnailFailure(
                f"frame extraction at {at_seconds:.3f}s failed: {stderr.strip() or 'unknown error'}"
            )

    @staticmethod
    def _terminate(process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.wait(timeout=_TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


def create_encode_engine(config: TranscodeConfig) -> EncodeEngine:
    return FFmpegEncodeEngine(
        ffmpeg_binary=config.ffmpeg_binary,
        ffprobe_binary=config.ffprobe_binary,
        log_level=config.ffmpeg_log_level,
    )
