"""Error taxonomy shared by resolution, merge and the HTTP layer.

Every error carries the HTTP status it maps to and a short user-facing
message; ``details`` holds the diagnostic text returned alongside it.
"""

from __future__ import annotations

from typing import Any


class MediaServiceError(Exception):
    status_code = 500
    public_message = "Internal error"

    def __init__(self, message: str | None = None, *, details: Any = None) -> None:
        super().__init__(message or self.public_message)
        self.details = details if details is not None else (message or None)


class InvalidMediaReference(MediaServiceError):
    status_code = 400
    public_message = "Invalid URL format"


class UnsupportedPlatform(MediaServiceError):
    status_code = 400
    public_message = "Unsupported platform"


class ResolverAttemptFailed(MediaServiceError):
    """One resolver attempt produced no usable payload. Recovered by the chain."""

    status_code = 502
    public_message = "Resolver attempt failed"


class AllProvidersExhausted(MediaServiceError):
    status_code = 502
    public_message = "Failed to fetch media"

    def __init__(self, failures: list[tuple[str, BaseException | None]], *, reference_url: str | None = None) -> None:
        self.failures = list(failures)
        self.reference_url = reference_url
        summary = "; ".join(f"{name}: {error}" for name, error in self.failures) or "no resolvers configured"
        super().__init__(
            f"all providers exhausted: {summary}",
            details=[{"resolver": name, "error": str(error) if error else None} for name, error in self.failures],
        )


class NoValidFormats(MediaServiceError):
    status_code = 404
    public_message = "No downloadable formats found"


class NoSuitableFormat(MediaServiceError):
    status_code = 404
    public_message = "No suitable format found"


class InvalidOrExpiredToken(MediaServiceError):
    status_code = 404
    public_message = "Invalid or expired merge token"


class MergeInProgress(MediaServiceError):
    """A merge for this token is already running; the caller should retry later."""

    status_code = 202
    public_message = "Merge in progress"


class MergeError(MediaServiceError):
    status_code = 500
    public_message = "Merge failed"


class UpstreamFetchError(MergeError):
    pass


class MuxerProcessError(MergeError):
    def __init__(self, message: str | None = None, *, returncode: int | None = None, stderr_tail: str = "") -> None:
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        detail = message or "muxer failed"
        if stderr_tail:
            detail = f"{detail}: {stderr_tail}"
        super().__init__(message, details=detail)


class MergeTimeout(MergeError):
    pass
