from typing import Optional, Union


class ProviderError(Exception):
    """Failure reported by a remote provider. Carries the HTTP status and retry hint when known."""

    def __init__(self, message: str = "Provider error",
                 status_code: Optional[int] = None,
                 retry_after: Optional[Union[str, int, float]] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimited(ProviderError):
    """Operation was rate limited by provider. `retry_after` is the server-suggested wait in seconds."""

    def __init__(self, message: str = "Rate limited",
                 retry_after: Optional[Union[str, int, float]] = None) -> None:
        super().__init__(message, status_code=429, retry_after=retry_after)


class Unauthorized(ProviderError):
    """Access token is missing, expired or invalid."""

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message, status_code=401)


class Forbidden(ProviderError):
    """Token lacks the scope required for the operation."""

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message, status_code=403)


class OcrError(Exception):
    """Text detection failed."""


class OcrConfigurationError(OcrError):
    """OCR service credentials are missing or rejected."""


class InvalidImage(OcrError):
    """Uploaded image payload could not be decoded."""
