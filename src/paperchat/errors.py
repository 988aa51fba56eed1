"""Error types raised by the paper chat pipeline."""
from __future__ import annotations


class PaperChatError(Exception):
    """Base class for errors that should be shown to the user."""


class ContentUnavailableError(PaperChatError):
    """No readable text could be found for a paper."""


class ConfigurationMissingError(PaperChatError):
    """A required endpoint or model setting is empty."""


class UpstreamRequestError(PaperChatError):
    """The LLM or embedding backend failed or returned an unusable payload."""

    def __init__(self, message: str, *, status_code: int | None = None, response_text: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = str(response_text or "")

    def __str__(self) -> str:
        base = super().__str__()
        if self.response_text:
            return f"{base}\n{self.response_text}"
        return base


def describe_error(exc: BaseException) -> str:
    """Readable one-line message for CLI and API boundaries."""
    if isinstance(exc, PaperChatError):
        return str(exc)
    text = str(exc).strip()
    return text or exc.__class__.__name__
