"""Network Error Handler for the review service REST client.

Provides network error classification, HTTP status mapping, retry delay
computation with exponential backoff, and user guidance for failures.
"""

import json
import logging
import random
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Dict, List, Optional, Type

import httpx

from ..remote.exceptions import (
    AuthError,
    BadRequestError,
    ConflictError,
    DNSResolutionError,
    ForbiddenError,
    NetworkConnectionError,
    NetworkTimeoutError,
    NotFoundError,
    RateLimitedError,
    ReauthRequiredError,
    ReviewClientError,
    ServerError,
    ServiceError,
    SSLCertificateError,
    TransportError,
)

logger = logging.getLogger(__name__)


@dataclass
class UserGuidance:
    """User guidance information for failures."""

    error_type: str
    troubleshooting_steps: List[str]
    contact_info: Optional[str] = None
    additional_notes: List[str] = field(default_factory=list)

    def format_for_console(self) -> str:
        """Format guidance for rich console output."""
        content = []
        content.append(f"[bold red]Error Type:[/bold red] {self.error_type}")
        content.append("")
        content.append("[bold yellow]Troubleshooting Steps:[/bold yellow]")

        for i, step in enumerate(self.troubleshooting_steps, 1):
            content.append(f"{i}. {step}")

        if self.additional_notes:
            content.append("")
            content.append("[bold blue]Additional Notes:[/bold blue]")
            for note in self.additional_notes:
                content.append(f"• {note}")

        if self.contact_info:
            content.append("")
            content.append(f"[bold green]Support:[/bold green] {self.contact_info}")

        return "\n".join(content)

    def format_plain(self) -> str:
        steps = "; ".join(self.troubleshooting_steps)
        return f"{self.error_type}: {steps}"


@dataclass
class RetryConfig:
    """Configuration for retry logic with exponential backoff."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_enabled: bool = True


class UserGuidanceProvider:
    """Provides user guidance for different failure scenarios."""

    def __init__(self):
        self._guidance_mapping: Dict[Type[Exception], Callable] = {
            NetworkConnectionError: self._get_connection_error_guidance,
            DNSResolutionError: self._get_dns_resolution_guidance,
            SSLCertificateError: self._get_ssl_certificate_guidance,
            NetworkTimeoutError: self._get_timeout_guidance,
            ServerError: self._get_server_error_guidance,
            RateLimitedError: self._get_rate_limit_guidance,
            ReauthRequiredError: self._get_reauth_guidance,
            ForbiddenError: self._get_forbidden_guidance,
            NotFoundError: self._get_not_found_guidance,
        }

    def get_guidance(self, error: Exception) -> UserGuidance:
        """Get user guidance for a specific error (nearest mapped base class)."""
        for error_type in type(error).__mro__:
            guidance_func = self._guidance_mapping.get(error_type)
            if guidance_func is not None:
                return guidance_func(error)
        return self._get_generic_guidance(error)

    def _get_connection_error_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Network Connection Error",
            troubleshooting_steps=[
                "Verify network connectivity to the service",
                "Check your proxy and firewall settings",
                "Verify the organization URL is correct",
            ],
            additional_notes=["This error typically indicates the service is not reachable"],
        )

    def _get_dns_resolution_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="DNS Resolution Error",
            troubleshooting_steps=[
                "Check your internet connection",
                "Verify the server hostname is correct",
                "Check your DNS server settings",
            ],
            additional_notes=["DNS resolution issues are often temporary"],
        )

    def _get_ssl_certificate_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="SSL Certificate Error",
            troubleshooting_steps=[
                "Check if the server certificate is valid and not expired",
                "Check if you need to update your certificate store",
            ],
            contact_info="Contact your system administrator for certificate issues",
            additional_notes=[
                "Do not disable certificate verification without proper security review",
            ],
        )

    def _get_timeout_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Network Timeout Error",
            troubleshooting_steps=[
                "Try again - this may be a temporary issue",
                "Check your network connection speed and stability",
            ],
            additional_notes=["Timeout errors are often temporary"],
        )

    def _get_server_error_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Server Error",
            troubleshooting_steps=[
                "The service is experiencing internal issues",
                "Please wait a few minutes and try again",
            ],
            additional_notes=["These errors are typically temporary"],
        )

    def _get_rate_limit_guidance(self, error: Exception) -> UserGuidance:
        retry_after = getattr(error, "retry_after", None) or 60
        return UserGuidance(
            error_type="Rate Limit Error",
            troubleshooting_steps=[
                "You are sending requests too quickly",
                f"Wait {retry_after:g} seconds before trying again",
            ],
            additional_notes=["This error is temporary and will resolve after waiting"],
        )

    def _get_reauth_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Sign-in Required",
            troubleshooting_steps=[
                "Your sign-in for this organization has expired or was revoked",
                "Sign in again to restore access",
            ],
        )

    def _get_forbidden_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Access Denied",
            troubleshooting_steps=[
                "Your account lacks permission for this resource",
                "Ask a project administrator to grant access",
            ],
        )

    def _get_not_found_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Not Found",
            troubleshooting_steps=[
                "The resource does not exist or was renamed",
                "Check the repository remote and identifiers",
            ],
        )

    def _get_generic_guidance(self, error: Exception) -> UserGuidance:
        return UserGuidance(
            error_type="Unexpected Error",
            troubleshooting_steps=[
                "Try again in a few minutes",
                "Run with --verbose for details",
            ],
        )


class NetworkErrorHandler:
    """Classifies transport and HTTP failures and computes retry delays."""

    def __init__(self, rng: Optional[Callable[[], float]] = None):
        self.guidance_provider = UserGuidanceProvider()
        self._rng = rng or random.random
        self._dns_error_patterns = [
            r"name.*resolution.*failed",
            r"name.*or.*service.*not.*known",
            r"nodename.*nor.*servname.*provided",
            r"temporary.*failure.*in.*name.*resolution",
            r"getaddrinfo.*failed",
        ]
        self._connection_error_patterns = [
            r"connection.*refused",
            r"connection.*reset",
            r"network.*is.*unreachable",
            r"no.*route.*to.*host",
        ]
        self._ssl_error_patterns = [
            r"ssl.*certificate.*verification.*failed",
            r"certificate.*verify.*failed",
            r"ssl.*handshake.*failed",
            r"bad.*certificate",
        ]

    def classify_network_error(self, error: Exception) -> TransportError:
        """Classify an httpx exception into a ``TransportError`` subclass.

        Args:
            error: The original httpx exception

        Returns:
            The typed exception; the caller raises it ``from`` the original
        """
        error_message = str(error).lower()

        if isinstance(error, httpx.ConnectTimeout):
            return NetworkTimeoutError(
                "Connection timed out. Check your network connection or try again later."
            )
        if isinstance(error, httpx.TimeoutException):
            return NetworkTimeoutError(
                "Request timed out. Check your network connection or try again later."
            )
        if isinstance(error, httpx.ConnectError):
            return self._classify_connect_error(error, error_message)
        if isinstance(error, (httpx.NetworkError, httpx.RemoteProtocolError)):
            return NetworkConnectionError(f"Network error: {error}")
        return NetworkConnectionError(f"Unknown network error: {error}")

    def _classify_connect_error(
        self, error: httpx.ConnectError, error_message: str
    ) -> TransportError:
        if any(re.search(p, error_message) for p in self._dns_error_patterns):
            return DNSResolutionError(
                "Cannot resolve server address. Check your internet connection and server URL."
            )

        if any(re.search(p, error_message) for p in self._ssl_error_patterns):
            return SSLCertificateError(
                "SSL certificate verification failed. Server may be using invalid certificate."
            )

        if any(re.search(p, error_message) for p in self._connection_error_patterns):
            return NetworkConnectionError(
                "Cannot connect to server. Check if the service is reachable."
            )

        return NetworkConnectionError(f"Connection failed: {error}")

    def classify_response(self, response: httpx.Response) -> ReviewClientError:
        """Map an error HTTP response to a typed exception.

        401 maps to ``AuthError``; everything else maps to a ``ServiceError``
        subclass carrying the status code and the server's message.
        """
        status_code = response.status_code
        detail = self.extract_error_detail(response)

        if status_code == 401:
            return AuthError("Authentication failed", detail)
        if status_code == 400:
            return BadRequestError(
                f"Request rejected: {detail}", status_code=status_code, detail=detail
            )
        if status_code == 403:
            return ForbiddenError(
                f"Access denied: {detail}", status_code=status_code, detail=detail
            )
        if status_code == 404:
            return NotFoundError(
                f"Not found: {detail}", status_code=status_code, detail=detail
            )
        if status_code == 409:
            return ConflictError(detail, status_code=status_code, detail=detail)
        if status_code == 429:
            return RateLimitedError(
                f"Rate limited: {detail}",
                detail=detail,
                retry_after=self.parse_retry_after(response.headers.get("Retry-After")),
            )
        if 500 <= status_code < 600:
            return ServerError(
                f"Service is experiencing issues: {detail}",
                status_code=status_code,
                detail=detail,
            )
        return ServiceError(
            f"Unexpected response: {detail}", status_code=status_code, detail=detail
        )

    @staticmethod
    def extract_error_detail(response: httpx.Response) -> str:
        status_code = response.status_code
        try:
            body = response.json()
        except (json.JSONDecodeError, ValueError):
            text = response.text.strip() if response.text else ""
            return text[:500] or f"HTTP {status_code}"

        if isinstance(body, dict):
            for key in ("message", "detail", "error_description", "error"):
                value = body.get(key)
                if isinstance(value, str) and value:
                    return value
        return f"HTTP {status_code}"

    @staticmethod
    def parse_retry_after(value: Optional[str]) -> Optional[float]:
        """Parse a Retry-After header given as seconds or an HTTP date."""
        if not value:
            return None
        value = value.strip()
        try:
            return max(0.0, float(value))
        except ValueError:
            pass
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring unparseable Retry-After: {value!r}")
            return None
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())

    def is_error_retryable(self, error: Exception) -> bool:
        """Determine if an error is retryable.

        Only transient failures are retried: timeouts, connection failures,
        5xx and 429. Authentication, SSL and other 4xx failures are permanent.
        """
        if isinstance(error, ReviewClientError):
            return error.is_retryable
        return False

    def compute_delay(
        self,
        attempt: int,
        config: RetryConfig,
        retry_after: Optional[float] = None,
    ) -> float:
        """Delay before retry number ``attempt`` (0-based).

        A server supplied Retry-After wins over the computed backoff; both are
        capped at ``max_delay``.
        """
        if retry_after is not None:
            return min(retry_after, config.max_delay)

        delay = min(
            config.initial_delay * (config.backoff_multiplier**attempt),
            config.max_delay,
        )

        if config.jitter_enabled:
            jitter = delay * 0.1 * self._rng()  # Up to 10% jitter
            delay = min(delay + jitter, config.max_delay)

        return delay
