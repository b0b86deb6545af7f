"""Cover image and scrub-bar sprite sheets.

Everything here is best effort: a broken thumbnail never fails a transcode.
"""

from __future__ import annotations

import logging
import math
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path

from services.transcode.application.interfaces import EncodeEngine, SpriteComposer
from services.transcode.domain.errors import ThumbnailFailure
from services.transcode.domain.media import SourceProbe
from services.transcode.domain.playlist import Cue, render_cue_sheet

logger = logging.getLogger(__name__)

COVER_NAME = "0001.jpg"
CUE_SHEET_NAME = "thumbnails.vtt"
SPRITE_MIN_DURATION_SECONDS = 10.0
TARGET_SAMPLE_COUNT = 50
MIN_SAMPLE_INTERVAL_SECONDS = 2


@dataclass(frozen=True)
class SpriteSheet:
    name: str
    sample_times: tuple[float, ...]


@dataclass(frozen=True)
class SpriteLayout:
    interval_seconds: int
    sheets: tuple[SpriteSheet, ...]
    cues: tuple[Cue, ...]


@dataclass
class ThumbnailSet:
    cover: Path | None = None
    sprites: list[Path] = field(default_factory=list)
    cue_sheet: Path | None = None


def sample_interval(duration_seconds: float) -> int:
    return max(MIN_SAMPLE_INTERVAL_SECONDS, int(duration_seconds // TARGET_SAMPLE_COUNT))


def plan_sprite_sheets(
    duration_seconds: float,
    *,
    interval_seconds: int,
    columns: int,
    rows: int,
    tile_width: int,
    tile_height: int,
) -> SpriteLayout:
    """Lay every sample out over as many sheets as it takes."""
    total = int(duration_seconds // interval_seconds)
    per_sheet = columns * rows
    sheets: list[SpriteSheet] = []
    cues: list[Cue] = []
    for sheet_index in range(math.ceil(total / per_sheet) if total else 0):
        name = f"sprite_{sheet_index}.jpg"
        first = sheet_index * per_sheet
        times = []
        for slot, sample in enumerate(range(first, min(first + per_sheet, total))):
            start = float(sample * interval_seconds)
            times.append(start)
            cues.append(
                Cue(
                    start_seconds=start,
                    end_seconds=min(start + interval_seconds, duration_seconds),
                    sprite_name=name,
                    x=(slot % columns) * tile_width,
                    y=(slot // columns) * tile_height,
                    width=tile_width,
                    height=tile_height,
                )
            )
        sheets.append(SpriteSheet(name=name, sample_times=tuple(times)))
    return SpriteLayout(
        interval_seconds=interval_seconds, sheets=tuple(sheets), cues=tuple(cues)
    )


class ThumbnailGenerator:
    def __init__(
        self,
        *,
        engine: EncodeEngine,
        composer: SpriteComposer,
        max_width: int = 1280,
        columns: int = 10,
        rows: int = 10,
        tile_width: int = 160,
        tile_height: int = 90,
    ) -> None:
        self._engine = engine
        self._composer = composer
        self._max_width = max_width
        self._columns = columns
        self._rows = rows
        self._tile_width = tile_width
        self._tile_height = tile_height

    def generate(
        self,
        source: Path,
        thumbs_dir: Path,
        probe: SourceProbe,
        *,
        scratch_dir: Path | None = None,
    ) -> ThumbnailSet | None:
        started = time.perf_counter()
        try:
            thumbs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.warning("Cannot create thumbnail dir %s: %s", thumbs_dir, exc)
            return None

        output = ThumbnailSet()
        try:
            output.cover = self._extract_cover(source, thumbs_dir, probe)
        except Exception as exc:
            logger.warning("Cover thumbnail failed, continuing: %s", exc)

        if probe.duration_seconds > SPRITE_MIN_DURATION_SECONDS:
            try:
                output.sprites, output.cue_sheet = self._build_sprites(
                    source,
                    thumbs_dir,
                    probe.duration_seconds,
                    scratch_dir or thumbs_dir.parent,
                )
            except Exception as exc:
                logger.warning("Sprite generation failed, continuing: %s", exc)
                self._discard_sprites(thumbs_dir)

        logger.info(
            "Thumbnails: cover=%s sprites=%d in %.1fs",
            bool(output.cover),
            len(output.sprites),
            time.perf_counter() - started,
        )
        if output.cover is None and not output.sprites:
            return None
        return output

    def _extract_cover(
        self, source: Path, thumbs_dir: Path, probe: SourceProbe
    ) -> Path:
        destination = thumbs_dir / COVER_NAME
        width = self._max_width
        if probe.width:
            width = min(width, probe.width)
        self._engine.extract_frame(
            source,
            destination,
            at_seconds=max(0.0, probe.duration_seconds / 2),
            width=width,
        )
        if not destination.exists():
            raise ThumbnailFailure("cover frame was not written")
        return destination

    def _build_sprites(
        self, source: Path, thumbs_dir: Path, duration: float, scratch_dir: Path
    ) -> tuple[list[Path], Path]:
        layout = plan_sprite_sheets(
            duration,
            interval_seconds=sample_interval(duration),
            columns=self._columns,
            rows=self._rows,
            tile_width=self._tile_width,
            tile_height=self._tile_height,
        )
        frames_dir = scratch_dir / "sprite-frames"
        frames_dir.mkdir(parents=True, exist_ok=True)
        sprites: list[Path] = []
        try:
            for sheet in layout.sheets:
                frames = []
                for at in sheet.sample_times:
                    frame = frames_dir / f"frame_{int(at):06d}.jpg"
                    self._engine.extract_frame(
                        source,
                        frame,
                        at_seconds=at,
                        width=self._tile_width,
                        height=self._tile_height,
                    )
                    frames.append(frame)
                sprite_path = thumbs_dir / sheet.name
                self._composer.compose(
                    frames,
                    sprite_path,
                    columns=self._columns,
                    tile_width=self._tile_width,
                    tile_height=self._tile_height,
                )
                sprites.append(sprite_path)
                logger.info(
                    "Generated %s with %d samples", sheet.name, len(frames)
                )
        finally:
            shutil.rmtree(frames_dir, ignore_errors=True)

        cue_path = thumbs_dir / CUE_SHEET_NAME
        cue_path.write_text(render_cue_sheet(layout.cues), encoding="utf-8")
        return sprites, cue_path

    @staticmethod
    def _discard_sprites(thumbs_dir: Path) -> None:
        for path in [*thumbs_dir.glob("sprite_*.jpg"), thumbs_dir / CUE_SHEET_NAME]:
            path.unlink(missing_ok=True)
