from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from services.transcode.application.interfaces import CallbackClient, StorageGateway
from services.transcode.domain.artifacts import UploadManifest
from services.transcode.domain.errors import RollbackError, RollbackTriggeredFailure
from services.transcode.domain.job import JobResult, TranscodeJob
from services.transcode.domain.state import PipelineState, PipelineStateMachine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.multiplier < 1:
            raise ValueError("backoff must not shrink")

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given (1-based) failed attempt."""
        return self.base_delay_seconds * (self.multiplier ** (attempt - 1))


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class CompletionNotifier:
    """Reports a published job, rolling the artifacts back if nobody listens."""

    def __init__(
        self,
        *,
        callback_client: CallbackClient | None,
        storage: StorageGateway,
        policy: BackoffPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], str] = _utc_now,
    ) -> None:
        self._client = callback_client
        self._storage = storage
        self._policy = policy or BackoffPolicy()
        self._sleep = sleep
        self._clock = clock

    def notify(
        self,
        job: TranscodeJob,
        result: JobResult,
        manifest: UploadManifest,
        state: PipelineStateMachine,
    ) -> JobResult:
        if state.state is not PipelineState.NOTIFYING:
            state.transition(PipelineState.NOTIFYING)

        if self._client is None:
            logger.warning("No backend configured; skipping completion callback")
            state.transition(PipelineState.DONE, "callback skipped")
            return result

        last_error: Exception | None = None
        for attempt in range(1, self._policy.max_attempts + 1):
            try:
                self._client.post_completion(result)
            except Exception as exc:
                last_error = exc
                logger.warning(
                    "Callback attempt %d/%d for %s failed: %s",
                    attempt,
                    self._policy.max_attempts,
                    job.video_id,
                    exc,
                )
                if attempt < self._policy.max_attempts:
                    self._sleep(self._policy.delay_for(attempt))
                continue
            logger.info(
                "Callback for %s succeeded on attempt %d", job.video_id, attempt
            )
            state.transition(PipelineState.DONE)
            return result

        error = f"completion callback failed after {self._policy.max_attempts} attempts: {last_error}"
        state.transition(PipelineState.ROLLING_BACK, error)
        deleted = self._rollback(job, manifest, error)
        state.transition(PipelineState.FAILED, error)
        raise RollbackTriggeredFailure(
            error, attempts=self._policy.max_attempts, deleted_keys=deleted
        ) from last_error

    def _rollback(self, job: TranscodeJob, manifest: UploadManifest, error: str) -> int:
        keys = manifest.keys()
        logger.error(
            "Rolling back %s: deleting %d published objects", job.video_id, len(keys)
        )
        deleted = 0
        for key in keys:
            try:
                self._storage.delete(key)
                deleted += 1
            except Exception as exc:
                logger.error("%s", RollbackError(f"Failed to delete {key}: {exc}"))

        try:
            self._client.post_failure(job, error, self._clock())
        except Exception as exc:
            logger.error(
                "%s", RollbackError(f"Failure notification for {job.video_id} failed: {exc}")
            )

        logger.info(
            "Rollback for %s finished: %d/%d objects deleted",
            job.video_id,
            deleted,
            len(keys),
        )
        return deleted
