from __future__ import annotations

import logging
from typing import Any

import httpx

from services.transcode.application.interfaces import CallbackClient
from services.transcode.config import TranscodeConfig
from services.transcode.domain.errors import CallbackDeliveryError
from services.transcode.domain.job import JobResult, TranscodeJob

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/videos/transcode/callback"
FAILURE_PATH = "/videos/transcode/failure"


def normalize_backend_base(url: str) -> str:
    """Return the backend base with exactly one trailing ``/api`` segment."""
    base = url.strip().rstrip("/")
    while base.endswith("/api/api"):
        base = base[: -len("/api")]
    if not base.endswith("/api"):
        base = f"{base}/api"
    return base


def relative_master_path(path: str) -> str:
    if "/hls/" in path:
        return path[path.index("/hls/") + 1 :]
    return path.lstrip("/")


class HttpCallbackClient(CallbackClient):
    def __init__(
        self,
        *,
        base_url: str,
        token: str | None = None,
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._base = normalize_backend_base(base_url)
        self._token = token
        self._client = client or httpx.Client(timeout=timeout_seconds)

    @property
    def callback_url(self) -> str:
        return f"{self._base}{CALLBACK_PATH}"

    @property
    def failure_url(self) -> str:
        return f"{self._base}{FAILURE_PATH}"

    def post_completion(self, result: JobResult) -> None:
        self._post(
            self.callback_url,
            {
                "videoId": result.video_id,
                "organizationId": result.organization_id,
                "assetKey": result.asset_key,
                "hlsMasterPath": relative_master_path(result.hls_master_path),
                "durationSeconds": round(result.duration_seconds or 0),
            },
        )
        logger.info("Callback to backend succeeded for %s", result.video_id)

    def post_failure(self, job: TranscodeJob, error: str, timestamp: str) -> None:
        self._post(
            self.failure_url,
            {
                "videoId": job.video_id,
                "organizationId": job.organization_id,
                "assetKey": job.asset_key,
                "error": error,
                "timestamp": timestamp,
            },
        )

    def close(self) -> None:
        self._client.close()

    def _headers(self) -> dict[str, str]:
        if self._token:
            return {"Authorization": f"Bearer {self._token}"}
        return {}

    def _post(self, url: str, payload: dict[str, Any]) -> None:
        try:
            response = self._client.post(url, json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise CallbackDeliveryError(
                f"POST {url} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise CallbackDeliveryError(f"POST {url} failed: {exc}") from exc


def create_callback_client(config: TranscodeConfig) -> CallbackClient | None:
    if not config.backend_api_url:
        return None
    return HttpCallbackClient(
        base_url=config.backend_api_url,
        token=config.backend_api_token,
        timeout_seconds=config.callback_timeout_seconds,
    )
