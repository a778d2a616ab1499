from typing import Optional


class RelayError(Exception):
    """Base class for failures the router turns into a reply."""


class ExtractionError(RelayError):
    pass


class InferenceError(RelayError):
    """
    Raised by the completion client for non-success responses, malformed
    payloads and transport failures. `status_code` and `body` are set when the
    API answered with an error status.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UnsupportedMediaError(RelayError):
    def __init__(self, mime_type: str):
        super().__init__(f"Unsupported media type: {mime_type or 'unknown'}")
        self.mime_type = mime_type


class ConfigError(Exception):
    """Startup configuration is missing or invalid."""
