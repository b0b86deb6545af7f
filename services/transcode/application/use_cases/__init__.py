"""Use cases for the transcode service."""

from .transcode_video import TranscodeVideoUseCase

__all__ = [
    "TranscodeVideoUseCase",
]
