"""
Exception hierarchy for playback and search failures
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sonora.services.stream import ProviderAttempt


class SonoraError(Exception):
    """Base class for all bot errors."""


class InvalidTrackError(SonoraError):
    """Track reference is missing a URL or a recoverable video id."""


class ProviderUnavailableError(SonoraError):
    """A stream provider cannot be used in this environment."""


class YtDlpProcessError(SonoraError):
    """The yt-dlp subprocess exited with a non-zero status."""

    def __init__(self, code: int, stderr: str = ""):
        self.code = code
        self.stderr = stderr
        message = f"yt-dlp exited with code {code}"
        if stderr:
            message = f"{message}: {stderr}"
        super().__init__(message)


class StreamResolutionError(SonoraError):
    """Every provider in the resolution chain failed."""

    def __init__(self, attempts: list[ProviderAttempt]):
        self.attempts = attempts
        summary = "; ".join(f"{a.provider}: {a.error}" for a in attempts if not a.ok)
        super().__init__(f"No stream provider succeeded ({summary or 'no providers tried'})")

    @property
    def last_error(self) -> BaseException | None:
        for attempt in reversed(self.attempts):
            if attempt.error is not None:
                return attempt.error
        return None


class SearchError(SonoraError):
    """Search could not produce results from any backend."""
