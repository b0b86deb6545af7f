from __future__ import annotations

import logging
import mimetypes
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from services.transcode.application.interfaces import StorageGateway
from services.transcode.domain.artifacts import PublishResult, UploadManifest
from services.transcode.domain.errors import PublishFailure

logger = logging.getLogger(__name__)

DEFAULT_UPLOAD_WORKERS = 16

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".vtt": "text/vtt",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


def content_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


class _Totals:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.bytes = 0
        self.files = 0

    def add(self, size: int) -> None:
        with self._lock:
            self.bytes += size
            self.files += 1


class ArtifactPublisher:
    def __init__(
        self,
        *,
        storage: StorageGateway,
        max_workers: int = DEFAULT_UPLOAD_WORKERS,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._storage = storage
        self._max_workers = max_workers

    def publish(
        self,
        local_dir: Path,
        remote_prefix: str,
        manifest: UploadManifest,
    ) -> PublishResult:
        """Upload ``local_dir`` under ``remote_prefix``.

        Subdirectories are published (one at a time) before the files of the
        directory that contains them. Every key that made it to storage is
        recorded in ``manifest``, including on failure, so the caller always
        knows what exists remotely.
        """
        started = time.perf_counter()
        totals = _Totals()
        self._publish_dir(local_dir, remote_prefix.rstrip("/"), manifest, totals)
        logger.info(
            "Published %d files (%d bytes) to %s in %.1fs",
            totals.files,
            totals.bytes,
            remote_prefix,
            time.perf_counter() - started,
        )
        return PublishResult(total_bytes=totals.bytes, file_count=totals.files)

    def _publish_dir(
        self,
        directory: Path,
        prefix: str,
        manifest: UploadManifest,
        totals: _Totals,
    ) -> None:
        entries = sorted(directory.iterdir(), key=lambda p: p.name)
        for sub in (e for e in entries if e.is_dir()):
            self._publish_dir(sub, f"{prefix}/{sub.name}", manifest, totals)

        files = [e for e in entries if e.is_file()]
        if not files:
            return

        pending: queue.SimpleQueue[Path] = queue.SimpleQueue()
        for path in files:
            pending.put(path)
        stop = threading.Event()
        errors: list[tuple[str, Exception]] = []
        errors_lock = threading.Lock()

        def drain() -> None:
            while not stop.is_set():
                try:
                    path = pending.get_nowait()
                except queue.Empty:
                    return
                key = f"{prefix}/{path.name}"
                try:
                    size = path.stat().st_size
                    self._storage.upload(
                        key, path.as_posix(), content_type=content_type_for(path)
                    )
                except Exception as exc:
                    stop.set()
                    with errors_lock:
                        errors.append((key, exc))
                    return
                manifest.record(path.as_posix(), key)
                totals.add(size)

        workers = min(self._max_workers, len(files))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="upload") as pool:
            for _ in range(workers):
                pool.submit(drain)

        if errors:
            key, exc = errors[0]
            logger.error(
                "Publishing %s stopped after %d uploads: %s failed: %s",
                prefix,
                len(manifest),
                key,
                exc,
            )
            raise PublishFailure(f"Upload of {key} failed: {exc}", object_key=key) from exc
