"""Error taxonomy for the platform integration.

Only ``TransportError`` is retryable. Everything else is terminal for the
call that raised it and ends up as the job's error message.
"""

from app.platforms.config import PlatformConfig


class PlatformError(Exception):
    """Base class for every failure talking to a platform."""

    retryable: bool = False


class TransportError(PlatformError):
    """Network-level failure: timeout, reset, refused connection."""

    retryable = True


class AuthenticationError(PlatformError):
    """The platform answered with an HTML challenge instead of JSON."""

    def __init__(self, platform: PlatformConfig) -> None:
        self.cookie_field = platform.session_cookie_field
        super().__init__(
            f"{platform.name} rejected the session or triggered a security check. "
            f"Log in again at {platform.base_url}, complete the verification, then "
            f"update the `{platform.session_cookie_field}` cookie"
        )


class BrowserFetchError(PlatformError):
    """An in-page fetch failed before any response was received."""


class MalformedResponseError(PlatformError):
    """Non-JSON, non-HTML response body."""


class BusinessError(PlatformError):
    """Non-zero business status in an otherwise well-formed response."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.code = code
        super().__init__(message)


class LoginRequiredError(BusinessError):
    """The vendor says the session is not logged in."""


class InsufficientBalanceError(BusinessError):
    """The account has no credits left."""


class SecurityCheckError(BusinessError):
    """The vendor wants the session re-verified."""


class ResultResolutionError(PlatformError):
    """An expected field is missing from a response."""


class UploadError(PlatformError):
    """Any failure in the reference image upload sequence."""


class GenerationFailedError(PlatformError):
    """The vendor reported the generation as failed."""


class ContentFilteredError(GenerationFailedError):
    """The prompt or images were rejected by the content filter."""


class GenerationTimeoutError(PlatformError):
    """The job ran past the wall-clock limit."""

    def __init__(self, elapsed_seconds: float, limit_seconds: float) -> None:
        self.elapsed_seconds = elapsed_seconds
        minutes = max(1, round(limit_seconds / 60))
        super().__init__(
            f"Video generation timed out after {int(elapsed_seconds)}s "
            f"(limit about {minutes} min), please retry later"
        )
