"""Error taxonomy shared by the core modules and translated at the API boundary."""
from __future__ import annotations


class DiligenceError(Exception):
    """Base class; ``status_code`` is the HTTP status the API reports."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(DiligenceError):
    status_code = 404


class InvalidInput(DiligenceError):
    status_code = 400


class UnsupportedFormat(InvalidInput):
    """Uploaded file extension has no parser."""


class ConfigurationMissing(DiligenceError):
    """An upstream (CRM, storage, LLM, criteria) is not configured.

    ``status_code`` is 400 when the caller asked for something that needs the
    upstream, 503 when the whole service is unavailable.
    """
    status_code = 400

    def __init__(self, message: str, hint: str = "", status_code: int = 400):
        super().__init__(f"{message}. {hint}".strip() if hint else message)
        self.hint = hint
        self.status_code = status_code


class UpstreamWriteFailure(DiligenceError):
    """The CRM rejected a write; the local record was left untouched."""
    status_code = 502

    def __init__(self, field: str, message: str, committed: list[str] | None = None):
        super().__init__(f"CRM {field} update failed: {message}")
        self.field = field
        self.committed = list(committed or [])


class IngestionFailed(DiligenceError):
    """No link or folder item in a batch could be ingested."""
    status_code = 502


class MalformedUpstreamResponse(DiligenceError):
    """An upstream answered with a payload that does not match the expected shape."""
    status_code = 502


class MatchingFailed(DiligenceError):
    """Every deal in a matching batch failed to evaluate."""
    status_code = 502
