from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from services.transcode.domain.job import VariantSpec
from services.transcode.domain.segmentation import round_half_up

AUDIO_CODEC_TAG = "mp4a.40.2"  # AAC-LC
BANDWIDTH_OVERHEAD = 1.1
AUDIO_SAMPLE_RATE = 48000


@dataclass(frozen=True)
class SourceProbe:
    duration_seconds: float
    width: int | None = None
    height: int | None = None
    fps: float | None = None
    has_audio: bool = False
    audio_channels: int | None = None
    audio_sample_rate: int | None = None


@dataclass(frozen=True)
class H264Tier:
    level: str
    codec_tag: str


STANDARD_TIER = H264Tier(level="4.0", codec_tag="avc1.4d4028")
HIGH_FPS_TIER = H264Tier(level="4.1", codec_tag="avc1.4d4029")


def select_h264_tier(height: int, fps: float | None) -> H264Tier:
    if height >= 720 and (fps or 0) > 30:
        return HIGH_FPS_TIER
    return STANDARD_TIER


def estimate_bandwidth(video_bitrate_kbps: int, audio_bitrate_kbps: int) -> int:
    """Approximate an HLS BANDWIDTH attribute with container overhead."""
    return round_half_up(
        (video_bitrate_kbps + audio_bitrate_kbps) * BANDWIDTH_OVERHEAD * 1000
    )


@dataclass(frozen=True)
class VariantEncodeParams:
    variant: VariantSpec
    playlist_path: Path
    segment_pattern: Path
    h264_level: str
    video_codec_tag: str
    preset: str
    crf: int | None
    gop_size: int
    min_keyframe_interval: int
    force_keyframes: str
    hls_time: float
    include_audio: bool
    audio_codec: str = "aac"
    audio_channels: int = 2
    audio_sample_rate: int = AUDIO_SAMPLE_RATE

    @property
    def variant_key(self) -> str:
        return self.variant.key


@dataclass(frozen=True)
class EncodeOutcome:
    """What the encode engine reports for one rung."""

    variant_key: str
    succeeded: bool
    error: str | None = None
    cancelled: bool = False

    @classmethod
    def success(cls, variant_key: str) -> "EncodeOutcome":
        return cls(variant_key=variant_key, succeeded=True)

    @classmethod
    def failure(cls, variant_key: str, error: str) -> "EncodeOutcome":
        return cls(variant_key=variant_key, succeeded=False, error=error)

    @classmethod
    def cancellation(cls, variant_key: str) -> "EncodeOutcome":
        return cls(
            variant_key=variant_key,
            succeeded=False,
            error="cancelled",
            cancelled=True,
        )


@dataclass(frozen=True)
class EncodeResult:
    variant_key: str
    width: int
    height: int
    local_playlist_path: Path
    bandwidth_estimate: int
    video_codec_tag: str
    audio_codec_tag: str | None
    chunk_count: int

    @property
    def codecs(self) -> str:
        if self.audio_codec_tag:
            return f"{self.video_codec_tag},{self.audio_codec_tag}"
        return self.video_codec_tag


@dataclass(frozen=True)
class MasterManifest:
    variants: tuple[EncodeResult, ...]
    path: Path

    @classmethod
    def from_results(cls, results: list[EncodeResult], path: Path) -> "MasterManifest":
        # sorted() is stable, so equal bandwidths keep ladder order.
        ordered = sorted(results, key=lambda r: r.bandwidth_estimate, reverse=True)
        return cls(variants=tuple(ordered), path=path)
