from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any, Mapping

from services.transcode.domain.errors import InvalidJobError
from services.transcode.domain.segmentation import MIN_SEGMENT_SECONDS

DEFAULT_AUDIO_BITRATE_KBPS = 128
DEFAULT_HLS_PATH = "hls"
DEFAULT_THUMBNAILS_PATH = "thumbs"


@dataclass(frozen=True)
class VariantSpec:
    width: int
    height: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int = DEFAULT_AUDIO_BITRATE_KBPS

    @property
    def key(self) -> str:
        return f"{self.height}p"


DEFAULT_LADDER: tuple[VariantSpec, ...] = (
    VariantSpec(width=1920, height=1080, video_bitrate_kbps=6000),
    VariantSpec(width=1280, height=720, video_bitrate_kbps=3000),
    VariantSpec(width=854, height=480, video_bitrate_kbps=1500),
    VariantSpec(width=640, height=360, video_bitrate_kbps=800),
    VariantSpec(width=426, height=240, video_bitrate_kbps=400),
)


@dataclass(frozen=True)
class TranscodeJob:
    video_id: str
    organization_id: str
    asset_key: str
    source_path: str
    hls_path: str = DEFAULT_HLS_PATH
    thumbnails_path: str = DEFAULT_THUMBNAILS_PATH
    ladder: tuple[VariantSpec, ...] = field(default=DEFAULT_LADDER)
    segment_seconds: float | None = None
    crf: int | None = None
    preset: str | None = None
    audio_bitrate_kbps: int = DEFAULT_AUDIO_BITRATE_KBPS

    @classmethod
    def from_payload(
        cls,
        payload: Mapping[str, Any],
        *,
        default_audio_bitrate_kbps: int = DEFAULT_AUDIO_BITRATE_KBPS,
    ) -> "TranscodeJob":
        """Build a job from the camelCase payload placed on the queue."""
        missing = [
            name
            for name in ("videoId", "organizationId", "assetKey", "sourcePath")
            if not payload.get(name)
        ]
        if missing:
            raise InvalidJobError(f"Job payload is missing {', '.join(missing)}")

        audio_kbps = _positive_int(
            payload.get("audioBitrateKbps", default_audio_bitrate_kbps),
            "audioBitrateKbps",
        )
        raw_ladder = payload.get("ladder")
        if raw_ladder:
            ladder = tuple(
                _parse_variant(entry, audio_kbps) for entry in raw_ladder
            )
        else:
            ladder = tuple(
                VariantSpec(
                    width=v.width,
                    height=v.height,
                    video_bitrate_kbps=v.video_bitrate_kbps,
                    audio_bitrate_kbps=audio_kbps,
                )
                for v in DEFAULT_LADDER
            )
        _ensure_unique_heights(ladder)

        segment_seconds = payload.get("segmentSeconds")
        if segment_seconds is not None:
            try:
                segment_seconds = float(segment_seconds)
            except (TypeError, ValueError) as exc:
                raise InvalidJobError("segmentSeconds must be a number") from exc
            if segment_seconds < MIN_SEGMENT_SECONDS:
                raise InvalidJobError("segmentSeconds must be at least 0.001")

        crf = payload.get("crf")
        if crf is not None:
            crf = _positive_int(crf, "crf")
        return cls(
            video_id=str(payload["videoId"]),
            organization_id=str(payload["organizationId"]),
            asset_key=str(payload["assetKey"]).rstrip("/"),
            source_path=str(payload["sourcePath"]),
            hls_path=_relative_dir(payload.get("hlsPath"), DEFAULT_HLS_PATH, "hlsPath"),
            thumbnails_path=_relative_dir(
                payload.get("thumbnailsPath"), DEFAULT_THUMBNAILS_PATH, "thumbnailsPath"
            ),
            ladder=ladder,
            segment_seconds=segment_seconds,
            crf=crf,
            preset=payload.get("preset") or None,
            audio_bitrate_kbps=audio_kbps,
        )


@dataclass(frozen=True)
class JobResult:
    video_id: str
    organization_id: str
    asset_key: str
    hls_master_path: str
    duration_seconds: float
    thumbnail_path: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "videoId": self.video_id,
            "organizationId": self.organization_id,
            "assetKey": self.asset_key,
            "hlsMasterPath": self.hls_master_path,
            "durationSeconds": self.duration_seconds,
        }
        if self.thumbnail_path:
            payload["thumbnailSamplePath"] = self.thumbnail_path
        return payload


def _parse_variant(entry: Mapping[str, Any], default_audio_kbps: int) -> VariantSpec:
    try:
        width = entry["width"]
        height = entry["height"]
        video_kbps = entry["videoBitrateKbps"]
    except (KeyError, TypeError) as exc:
        raise InvalidJobError(f"Invalid ladder entry {entry!r}") from exc
    return VariantSpec(
        width=_positive_int(width, "width"),
        height=_positive_int(height, "height"),
        video_bitrate_kbps=_positive_int(video_kbps, "videoBitrateKbps"),
        audio_bitrate_kbps=_positive_int(
            entry.get("audioBitrateKbps", default_audio_kbps), "audioBitrateKbps"
        ),
    )


def _positive_int(value: Any, name: str) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidJobError(f"{name} must be an integer") from exc
    if number <= 0:
        raise InvalidJobError(f"{name} must be positive")
    return number


def _ensure_unique_heights(ladder: tuple[VariantSpec, ...]) -> None:
    # Rung files are named by height.
    seen: set[int] = set()
    for variant in ladder:
        if variant.height in seen:
            raise InvalidJobError(f"Duplicate ladder rung {variant.key}")
        seen.add(variant.height)


def _relative_dir(value: Any, default: str, name: str) -> str:
    """Output directory below the asset prefix; it may not climb out of it."""
    raw = str(value or "").strip()
    if not raw:
        return default
    path = PurePosixPath(raw.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts or not path.parts:
        raise InvalidJobError(f"{name} must be a relative directory, got {raw!r}")
    return path.as_posix()
