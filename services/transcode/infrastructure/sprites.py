from __future__ import annotations

import math
from pathlib import Path
from typing import Sequence

from PIL import Image

from services.transcode.application.interfaces import SpriteComposer
from services.transcode.domain.errors import ThumbnailFailure


class PillowSpriteComposer(SpriteComposer):
    """Tiles frames row by row into a single JPEG sheet."""

    def __init__(self, *, quality: int = 80, background: str = "black") -> None:
        self._quality = quality
        self._background = background

    def compose(
        self,
        frames: Sequence[Path],
        destination: Path,
        *,
        columns: int,
        tile_width: int,
        tile_height: int,
    ) -> None:
        if not frames:
            raise ThumbnailFailure("no frames to compose")
        rows = math.ceil(len(frames) / columns)
        width = min(columns, len(frames)) * tile_width
        sheet = Image.new("RGB", (width, rows * tile_height), self._background)
        for index, frame_path in enumerate(frames):
            with Image.open(frame_path) as frame:
                tile = frame.convert("RGB")
                if tile.size != (tile_width, tile_height):
                    tile = tile.resize((tile_width, tile_height))
                sheet.paste(
                    tile,
                    ((index % columns) * tile_width, (index // columns) * tile_height),
                )
        destination.parent.mkdir(parents=True, exist_ok=True)
        sheet.save(destination, format="JPEG", quality=self._quality)
