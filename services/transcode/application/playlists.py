from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

from services.transcode.domain.media import EncodeResult, MasterManifest
from services.transcode.domain.playlist import (
    normalize_media_playlist,
    render_master_playlist,
)

logger = logging.getLogger(__name__)

MASTER_PLAYLIST_NAME = "master.m3u8"


class PlaylistAssembler:
    def assemble(
        self, results: Sequence[EncodeResult], output_dir: Path
    ) -> MasterManifest:
        for result in results:
            self._normalize(result.local_playlist_path)

        manifest = MasterManifest.from_results(
            list(results), output_dir / MASTER_PLAYLIST_NAME
        )
        manifest.path.write_text(render_master_playlist(manifest), encoding="utf-8")
        logger.info(
            "Wrote master playlist with %d variants: %s",
            len(manifest.variants),
            ", ".join(
                f"{r.variant_key}@{r.bandwidth_estimate}" for r in manifest.variants
            ),
        )
        return manifest

    def _normalize(self, playlist_path: Path) -> None:
        original = playlist_path.read_text(encoding="utf-8")
        normalized = normalize_media_playlist(original)
        if normalized != original:
            playlist_path.write_text(normalized, encoding="utf-8")
