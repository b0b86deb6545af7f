from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional, Protocol, Sequence

from services.transcode.domain.job import JobResult, TranscodeJob
from services.transcode.domain.media import (
    EncodeOutcome,
    SourceProbe,
    VariantEncodeParams,
)
from services.transcode.domain.state import PipelineState


class StorageGateway(Protocol):
    def download(self, object_key: str, destination_path: str) -> None: ...

    def upload(
        self, object_key: str, source_path: str, content_type: str | None = None
    ) -> None: ...

    def delete(self, object_key: str) -> None: ...

    def list(self, prefix: str) -> list[str]: ...


class EncodeEngine(Protocol):
    """Black-box media engine: inspect, encode one rung, grab one frame."""

    def probe(self, source: Path) -> SourceProbe: ...

    def encode_variant(
        self,
        source: Path,
        params: VariantEncodeParams,
        cancel_event: threading.Event,
    ) -> EncodeOutcome: ...

    def extract_frame(
        self,
        source: Path,
        destination: Path,
        *,
        at_seconds: float,
        width: int | None = None,
        height: int | None = None,
    ) -> None: ...


class SpriteComposer(Protocol):
    def compose(
        self,
        frames: Sequence[Path],
        destination: Path,
        *,
        columns: int,
        tile_width: int,
        tile_height: int,
    ) -> None: ...


class CallbackClient(Protocol):
    def post_completion(self, result: JobResult) -> None: ...

    def post_failure(self, job: TranscodeJob, error: str, timestamp: str) -> None: ...


class StatusListener(Protocol):
    def __call__(
        self,
        video_id: str,
        previous: PipelineState,
        current: PipelineState,
        message: Optional[str],
    ) -> None: ...
