"""Exception types raised across the package."""

from __future__ import annotations


class CosmicSpecError(Exception):
    """Base class for all package errors."""


class UploadError(CosmicSpecError):
    """An uploaded document was rejected before any processing."""


class LLMNotConfiguredError(CosmicSpecError):
    """No API key is configured for the LLM endpoint."""

    def __init__(self, message: str = "请先配置API密钥") -> None:
        super().__init__(message)


class StreamError(CosmicSpecError):
    """A streamed response carried an error event."""


class DiagramRenderError(CosmicSpecError):
    """Kroki could not render a diagram with either transport."""
