from __future__ import annotations

from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Tuple


class UploadManifest:
    """Record of every object the publisher actually put in storage.

    Rollback deletes exactly these keys, nothing guessed by convention.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._entries: Dict[str, str] = {}

    def record(self, local_path: str, remote_key: str) -> None:
        with self._lock:
            self._entries[local_path] = remote_key

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.values())

    def items(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._entries.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, remote_key: object) -> bool:
        with self._lock:
            return remote_key in self._entries.values()


@dataclass(frozen=True)
class PublishResult:
    total_bytes: int
    file_count: int
