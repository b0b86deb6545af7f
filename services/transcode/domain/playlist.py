from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from services.transcode.domain.media import MasterManifest

ENDLIST_TAG = "#EXT-X-ENDLIST"
MASTER_HEADER = "#EXTM3U\n#EXT-X-VERSION:6\n\n"


def normalize_media_playlist(text: str) -> str:
    """Keep only base names in segment URIs and make sure the VOD list ends."""
    lines = []
    has_endlist = False
    for raw in text.splitlines():
        line = raw.strip()
        if not line:
            lines.append("")
            continue
        if line.startswith("#"):
            if line == ENDLIST_TAG:
                has_endlist = True
            lines.append(line)
            continue
        lines.append(line.replace("\\", "/").rsplit("/", 1)[-1])

    while lines and lines[-1] == "":
        lines.pop()
    if not has_endlist:
        lines.append(ENDLIST_TAG)
    return "\n".join(lines) + "\n"


def render_master_playlist(manifest: MasterManifest) -> str:
    content = MASTER_HEADER
    for result in manifest.variants:
        content += (
            f"#EXT-X-STREAM-INF:BANDWIDTH={result.bandwidth_estimate},"
            f"RESOLUTION={result.width}x{result.height},"
            f'CODECS="{result.codecs}"\n'
        )
        content += f"{result.local_playlist_path.name}\n\n"
    return content


@dataclass(frozen=True)
class Cue:
    start_seconds: float
    end_seconds: float
    sprite_name: str
    x: int
    y: int
    width: int
    height: int


def format_cue_timestamp(seconds: float) -> str:
    millis_total = int(round(max(0.0, seconds) * 1000))
    hours, remainder = divmod(millis_total, 3_600_000)
    minutes, remainder = divmod(remainder, 60_000)
    secs, millis = divmod(remainder, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def render_cue_sheet(cues: Iterable[Cue]) -> str:
    lines = ["WEBVTT", ""]
    for cue in cues:
        lines.append(
            f"{format_cue_timestamp(cue.start_seconds)} --> "
            f"{format_cue_timestamp(cue.end_seconds)}"
        )
        lines.append(f"{cue.sprite_name}#xywh={cue.x},{cue.y},{cue.width},{cue.height}")
        lines.append("")
    return "\n".join(lines)
