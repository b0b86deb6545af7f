from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional

from services.transcode.domain.errors import InvalidTransitionError

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    ENCODING = "encoding"
    UPLOADING = "uploading"
    NOTIFYING = "notifying"
    DONE = "done"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineState.DONE, PipelineState.FAILED)


_ALLOWED_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.ENCODING: frozenset({PipelineState.UPLOADING, PipelineState.FAILED}),
    PipelineState.UPLOADING: frozenset({PipelineState.NOTIFYING, PipelineState.FAILED}),
    PipelineState.NOTIFYING: frozenset({PipelineState.DONE, PipelineState.ROLLING_BACK}),
    PipelineState.ROLLING_BACK: frozenset({PipelineState.FAILED}),
    PipelineState.DONE: frozenset(),
    PipelineState.FAILED: frozenset(),
}

TransitionListener = Callable[[str, PipelineState, PipelineState, Optional[str]], None]


class PipelineStateMachine:
    def __init__(
        self,
        video_id: str,
        listener: TransitionListener | None = None,
    ) -> None:
        self.video_id = video_id
        self._state = PipelineState.ENCODING
        self._listener = listener
        self.history: list[PipelineState] = [self._state]

    @property
    def state(self) -> PipelineState:
        return self._state

    def transition(self, target: PipelineState, message: str | None = None) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Cannot move {self.video_id} from {self._state.value} to {target.value}"
            )
        previous = self._state
        self._state = target
        self.history.append(target)
        logger.info(
            "Video %s: %s -> %s%s",
            self.video_id,
            previous.value,
            target.value,
            f" ({message})" if message else "",
        )
        if self._listener is not None:
            try:
                self._listener(self.video_id, previous, target, message)
            except Exception as exc:
                logger.warning(
                    "Status listener failed for %s: %s", self.video_id, exc
                )

    def fail(self, message: str | None = None) -> None:
        """Move to FAILED from any non-terminal state."""
        if self._state.is_terminal:
            return
        if self._state is PipelineState.NOTIFYING:
            self.transition(PipelineState.ROLLING_BACK, message)
        self.transition(PipelineState.FAILED, message)
