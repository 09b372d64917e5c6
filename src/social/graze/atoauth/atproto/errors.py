"""
Error taxonomy for the AT Protocol OAuth client.

Every failure surfaced by the client derives from `OAuthClientException`. The
`retryable` flag tells the caller whether repeating the same operation can
succeed; nothing in the client retries on its own.

Startup failures (`ConfigError`, `KeySetError`) are fatal. Resolution and
network failures are retryable. State, token and session failures require the
caller to restart authorization.
"""

from typing import Optional


class OAuthClientException(Exception):
    """Base class for all errors raised by the OAuth client."""

    retryable: bool = False


class ConfigError(OAuthClientException):
    """Configuration is absent or malformed. Raised at startup only."""


class InvalidConfigError(ConfigError):
    """Configuration cannot produce a valid client metadata document."""

    @staticmethod
    def invalid_base_url(base_url: str) -> "InvalidConfigError":
        return InvalidConfigError(
            f"error-oauth-config-1000 Base URL must be an absolute http(s) URL: {base_url!r}"
        )

    @staticmethod
    def no_redirect_uris() -> "InvalidConfigError":
        return InvalidConfigError("error-oauth-config-1001 No redirect URIs resolved")


class KeySetError(OAuthClientException):
    """Base class for signing key failures."""


class KeySetEmptyError(KeySetError):
    """No signing key was loaded."""


class KeyImportError(KeySetError):
    """A key descriptor could not be imported."""


class NoUsableKeyError(KeySetError):
    """No loaded key supports the requested algorithm(s)."""


class ResolutionError(OAuthClientException):
    """The subject or its authorization server could not be resolved."""

    retryable = True


class TransientNetworkError(OAuthClientException):
    """The identity provider or a resolution service was unreachable."""

    retryable = True


class InvalidStateError(OAuthClientException):
    """
    The callback does not match a live authorization attempt.

    Unknown and already-consumed attempts are indistinguishable and both raise
    `unknown_state`. The caller must restart authorization.
    """

    @staticmethod
    def missing_state() -> "InvalidStateError":
        return InvalidStateError("error-oauth-state-1000 Callback is missing state")

    @staticmethod
    def unknown_state() -> "InvalidStateError":
        return InvalidStateError("error-oauth-state-1001 No matching authorization state")

    @staticmethod
    def expired() -> "InvalidStateError":
        return InvalidStateError("error-oauth-state-1002 Authorization state has expired")

    @staticmethod
    def issuer_mismatch() -> "InvalidStateError":
        return InvalidStateError("error-oauth-state-1003 Callback issuer mismatch")

    @staticmethod
    def missing_code() -> "InvalidStateError":
        return InvalidStateError("error-oauth-state-1004 Callback is missing code")


class TokenExchangeError(OAuthClientException):
    """The provider rejected a token request, or returned an unusable token set."""

    def __init__(
        self,
        message: str,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.error = error
        self.error_description = error_description
        self.status = status


class AuthorizationRequestError(OAuthClientException):
    """The provider rejected the pushed authorization request."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class AuthorizationDeniedError(OAuthClientException):
    """The provider redirected back with an error instead of a code."""

    def __init__(
        self,
        error: str,
        error_description: Optional[str] = None,
        caller_state: Optional[str] = None,
    ) -> None:
        super().__init__(
            f"error-oauth-callback-1000 Authorization failed: {error}"
            + (f" ({error_description})" if error_description else "")
        )
        self.error = error
        self.error_description = error_description
        self.caller_state = caller_state


class SessionNotFoundError(OAuthClientException):
    """No session is stored for the subject."""


class SessionExpiredError(OAuthClientException):
    """The session can no longer be refreshed and has been deleted."""


class AuthorizationCancelledError(OAuthClientException):
    """The caller cancelled `authorize` before it returned."""


class PersistenceError(OAuthClientException):
    """A store write failed."""


class LockTimeoutError(OAuthClientException):
    """Another caller held the per-key lock for too long."""

    retryable = True
