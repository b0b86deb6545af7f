from __future__ import annotations


class TranscodeError(RuntimeError):
    """Base class for every failure raised by the transcode pipeline."""


class InvalidJobError(TranscodeError, ValueError):
    """Raised when a queue payload cannot be turned into a job."""


class TransientIOError(TranscodeError):
    """Download or network fault; left to the queue's own retry policy."""


class SourceProbeError(TranscodeError):
    """Raised when the source file cannot be inspected."""


class EncodeEngineFailure(TranscodeError):
    def __init__(self, message: str, *, variant_key: str | None = None) -> None:
        super().__init__(message)
        self.variant_key = variant_key


class ThumbnailFailure(TranscodeError):
    pass


class PublishFailure(TranscodeError):
    def __init__(self, message: str, *, object_key: str | None = None) -> None:
        super().__init__(message)
        self.object_key = object_key


class CallbackDeliveryError(TranscodeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RollbackTriggeredFailure(TranscodeError):
    """Terminal failure surfaced to the queue once rollback has run."""

    def __init__(self, message: str, *, attempts: int, deleted_keys: int) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.deleted_keys = deleted_keys


class RollbackError(TranscodeError):
    pass


class InvalidTransitionError(TranscodeError):
    pass
