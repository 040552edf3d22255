"""Exception hierarchy shared by the sync pipeline."""

from __future__ import annotations


class SalesyncError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(SalesyncError):
    """Raised when required configuration (env or settings) is missing or invalid."""


class IntegrityError(SalesyncError):
    """Raised when an encrypted token fails authentication or is malformed."""


class CaptchaError(SalesyncError):
    """Raised when the CAPTCHA solving service reports a non-retryable failure."""


class CaptchaNoCapacity(CaptchaError):
    """The solving service has no free worker slot; safe to retry after a pause."""


class LoginError(SalesyncError):
    """Base class for failures while establishing an aggregator session."""


class PageShapeChanged(LoginError):
    """The login page no longer exposes the elements the driver depends on."""


class CaptchaLoadTimeout(LoginError):
    """No CAPTCHA image was captured after focusing the CAPTCHA input."""


class LoginFailed(LoginError):
    """Every CAPTCHA attempt was rejected, or the session could not be verified."""


class VerificationTimeout(SalesyncError, TimeoutError):
    """No verification e-mail arrived before the deadline, or the mailbox stopped answering."""

    def __init__(self, timeout: float, elapsed: float, *, reason: str | None = None) -> None:
        if reason:
            message = f"Mailbox unavailable after {elapsed:.1f}s: {reason}"
        else:
            message = f"No verification email within {int(timeout)}s (waited {elapsed:.1f}s)"
        super().__init__(message)
        self.reason = reason
        self.timeout = timeout
        self.elapsed = elapsed


class UpstreamError(SalesyncError):
    """The aggregator API answered with an unexpected business or transport error."""

    def __init__(self, message: str, *, code: object = None, platform: str | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.platform = platform


class AlreadyRunning(SalesyncError):
    """A sync for the same integration is already in flight."""

    def __init__(self, integration: str) -> None:
        super().__init__("Sincronização já em andamento.")
        self.integration = integration


LOGIN_MESSAGE_MARKERS = ("CAPTCHA", "Login", "login")


def is_login_related(exc: BaseException) -> bool:
    """Return True when ``exc`` means the stored session credential cannot be trusted."""

    if isinstance(exc, (LoginError, CaptchaError, VerificationTimeout)):
        return True
    message = str(exc)
    return any(marker in message for marker in LOGIN_MESSAGE_MARKERS)
