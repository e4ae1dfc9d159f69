"""Custom exceptions for Brain Lane."""

from __future__ import annotations


# Substrings providers use when a prompt does not fit the model's window.
CONTEXT_LIMIT_MARKERS: tuple[str, ...] = (
    "context length",
    "token limit",
    "maximum context",
    "too many tokens",
    "request too large",
)


class BrainLaneException(Exception):
    """Base exception for Brain Lane."""
    pass


class LLMError(BrainLaneException):
    """LLM API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        self.status_code = status_code
        self.code = code
        super().__init__(message)

    @property
    def is_context_too_large(self) -> bool:
        text = str(self).lower()
        return any(marker in text for marker in CONTEXT_LIMIT_MARKERS)


class TransientLLMError(LLMError):
    """Network failure, timeout or provider 5xx. Safe to retry."""
    pass


class RateLimitError(LLMError):
    """Rate limit exceeded (locally or by the provider)."""
    pass


class ScanError(BrainLaneException):
    """Local project scan failed unexpectedly."""
    pass


class PipelineError(BrainLaneException):
    """Completion pipeline errors."""
    pass


class AnalysisError(BrainLaneException):
    """Project analysis could not produce even the local baseline."""
    pass


class ProjectNotFoundError(BrainLaneException):
    """No project with the given id."""

    def __init__(self, project_id: str) -> None:
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id}")


class FileMarkerError(BrainLaneException):
    """FILE: marker parsing errors."""
    pass


class NoFilesFoundError(FileMarkerError):
    """The response contains no FILE: marker at all."""
    pass


class MalformedMarkerError(FileMarkerError):
    """A FILE: marker is present but not followed by a well-formed block."""

    def __init__(self, line: int, reason: str) -> None:
        self.line = line
        self.reason = reason
        super().__init__(f"Malformed FILE: marker at line {line}: {reason}")


class ProxyError(BrainLaneException):
    """Streaming proxy errors surfaced to the HTTP caller."""

    def __init__(self, message: str, status_code: int = 500, code: str | int = "STREAM_ERROR") -> None:
        self.status_code = status_code
        self.code = code
        super().__init__(message)
