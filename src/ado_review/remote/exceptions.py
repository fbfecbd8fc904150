"""Exception classes for the review client.

Every failure raised below the review service facade is one of these types.
Transport-level exceptions (httpx) are classified into this hierarchy by
``NetworkErrorHandler`` and never leak past the REST transport.
"""

from typing import Any, Optional


class ReviewClientError(Exception):
    """Base exception for all review client errors."""

    is_retryable: bool = False

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Transport errors


class TransportError(ReviewClientError):
    """Connection-level failure (no HTTP response was received)."""

    is_retryable = True


class NetworkConnectionError(TransportError):
    """Exception raised for connection-related network failures."""

    pass


class NetworkTimeoutError(TransportError):
    """Exception raised when a request or connection attempt times out."""

    pass


class DNSResolutionError(TransportError):
    """Exception raised for DNS resolution failures."""

    pass


class SSLCertificateError(TransportError):
    """Exception raised for SSL certificate verification failures."""

    is_retryable = False


# Authentication errors


class AuthError(ReviewClientError):
    """Exception raised when the service rejects our credentials."""

    pass


class ReauthRequiredError(AuthError):
    """The account's token cannot be refreshed; the user must sign in again."""

    def __init__(
        self,
        message: str,
        account_key: Any = None,
        details: Optional[str] = None,
    ):
        super().__init__(message, details)
        self.account_key = account_key


# Service errors (HTTP responses with an error status)


class ServiceError(ReviewClientError):
    """Exception raised for error responses returned by the service."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class BadRequestError(ServiceError):
    """400: the request was rejected as invalid."""

    pass


class ForbiddenError(ServiceError):
    """403: the token lacks the scope or permission for this resource."""

    pass


class NotFoundError(ServiceError):
    """404: the resource does not exist (often a renamed or deleted identity)."""

    pass


class ConflictError(ServiceError):
    """409: e.g. identical source/target branch or a duplicate pull request."""

    pass


class RateLimitedError(ServiceError):
    """429: the service asked us to slow down."""

    is_retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = 429,
        detail: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code=status_code, detail=detail)
        self.retry_after = retry_after


class ServerError(ServiceError):
    """5xx: the service failed internally."""

    is_retryable = True


class MalformedResponseError(ServiceError):
    """A successful response whose body could not be decoded."""

    pass


# Sync errors


class SyncIntegrityError(ReviewClientError):
    """A delta payload cannot be applied onto the last snapshot."""

    pass


# Account and credential errors


class NoMatchingAccountError(ReviewClientError):
    """No stored account matches the repository's organization."""

    pass


class AccountNotFoundError(ReviewClientError):
    """The account key does not refer to a stored account."""

    pass


class CredentialStoreError(ReviewClientError):
    """Exception raised when the credential store cannot be read or written."""

    pass


class CredentialEncryptionError(CredentialStoreError):
    """Raised when credential encryption fails."""

    pass


class CredentialDecryptionError(CredentialStoreError):
    """Raised when credential decryption fails."""

    pass


class URLValidationError(ReviewClientError):
    """Exception raised when a remote or organization URL cannot be parsed."""

    pass


class AvatarUnavailableError(ReviewClientError):
    """The user's picture could not be fetched (possibly a cached failure)."""

    pass
