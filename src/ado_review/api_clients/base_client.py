"""REST transport for the review service.

Provides bearer authentication through the token lifecycle manager, retry
with exponential backoff for transient failures, a single refresh-and-retry
cycle on 401, pagination over continuation tokens, and a request-level
concurrency bound.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
)
from urllib.parse import quote

import httpx

from ..config import TransportConfig
from ..remote.exceptions import (
    MalformedResponseError,
    ReauthRequiredError,
    URLValidationError,
)
from ..remote.models import AccountKey
from ..remote.token_manager import TokenLifecycleManager
from ..remote.url_parser import RepositoryIdentity
from .network_error_handler import NetworkErrorHandler, RetryConfig

logger = logging.getLogger(__name__)

CONTINUATION_HEADER = "x-ms-continuationtoken"
CONTINUATION_PARAM = "continuationToken"

Sleep = Callable[[float], Awaitable[None]]

_REQUIRED = object()


def is_sign_in_page(response: httpx.Response) -> bool:
    """True for the HTML sign-in page the service serves (203) to a bad credential."""
    content_type = response.headers.get("Content-Type", "")
    return response.status_code == 203 and "text/html" in content_type.lower()


def decode_json(response: httpx.Response, default: Any = _REQUIRED) -> Any:
    """Decode a JSON body.

    Args:
        response: A successful response
        default: Returned for an empty body; without it an empty body is
            malformed

    Raises:
        MalformedResponseError: If the body is not valid JSON
    """
    if not response.content and default is not _REQUIRED:
        return default
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponseError(
            "Malformed response",
            status_code=response.status_code,
            detail=str(e),
        ) from e


def decode_object(
    response: httpx.Response, default: Any = _REQUIRED
) -> Dict[str, Any]:
    """Decode a JSON body that must be an object."""
    data = decode_json(response, default)
    if not isinstance(data, dict):
        raise MalformedResponseError(
            "Malformed response",
            status_code=response.status_code,
            detail=f"expected a JSON object, got {type(data).__name__}",
        )
    return data


@dataclass(frozen=True)
class ApiRequest:
    """One REST call, independent of the token it will be sent with."""

    method: str
    url: str
    account_key: AccountKey
    params: Dict[str, Any] = field(default_factory=dict)
    json_body: Any = None
    content: Optional[bytes] = None
    headers: Dict[str, str] = field(default_factory=dict)
    accept_statuses: Tuple[int, ...] = ()

    def with_params(self, **params: Any) -> "ApiRequest":
        merged = dict(self.params)
        merged.update(params)
        return dataclasses.replace(self, params=merged)

    def with_headers(self, **headers: str) -> "ApiRequest":
        merged = dict(self.headers)
        merged.update(headers)
        return dataclasses.replace(self, headers=merged)


class RestTransport:
    """Authenticated HTTP execution with retries and pagination."""

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        config: Optional[TransportConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
        error_handler: Optional[NetworkErrorHandler] = None,
    ):
        self.token_manager = token_manager
        self.config = config or TransportConfig()
        self._session = client
        self._owns_session = client is None
        self._sleep = sleep
        self._network_error_handler = error_handler or NetworkErrorHandler()
        self._retry_config = RetryConfig(
            max_attempts=self.config.max_attempts,
            initial_delay=self.config.initial_delay,
            max_delay=self.config.max_delay,
            backoff_multiplier=self.config.backoff_multiplier,
            jitter_enabled=self.config.jitter_enabled,
        )
        self._request_semaphore = asyncio.Semaphore(
            self.config.max_concurrent_requests
        )

    @property
    def session(self) -> httpx.AsyncClient:
        """Get or create HTTP session."""
        if self._session is None or self._session.is_closed:
            timeouts = httpx.Timeout(
                connect=self.config.connect_timeout,
                read=self.config.read_timeout,
                write=self.config.write_timeout,
                pool=self.config.pool_timeout,
            )

            limits = httpx.Limits(
                max_connections=self.config.max_concurrent_requests,
                max_keepalive_connections=5,
                keepalive_expiry=30.0,
            )

            self._session = httpx.AsyncClient(
                timeout=timeouts,
                limits=limits,
                headers={"Accept": "application/json"},
                follow_redirects=True,
                verify=True,
            )
            self._owns_session = True
        return self._session

    async def execute(self, request: ApiRequest) -> httpx.Response:
        """Send ``request`` and return the response.

        Returns:
            A 2xx/3xx response, or one whose status is in ``accept_statuses``

        Raises:
            TransportError: If the service could not be reached
            ServiceError: If the service answered with an error status
            ReauthRequiredError: If the account's credentials were rejected
        """
        async with self._request_semaphore:
            return await self._execute(request)

    async def _execute(self, request: ApiRequest) -> httpx.Response:
        key = request.account_key
        attempt = 0
        refreshed_after_rejection = False

        while True:
            token = await self.token_manager.acquire_valid_token(key)
            headers = dict(request.headers)
            headers["Authorization"] = f"Bearer {token}"

            try:
                response = await self.session.request(
                    request.method,
                    request.url,
                    params=request.params or None,
                    json=request.json_body,
                    content=request.content,
                    headers=headers,
                )
            except httpx.InvalidURL as e:
                raise URLValidationError(f"Invalid request URL: {request.url}", str(e))
            except httpx.HTTPError as e:
                network_error = self._network_error_handler.classify_network_error(e)
                if (
                    self._network_error_handler.is_error_retryable(network_error)
                    and attempt + 1 < self._retry_config.max_attempts
                ):
                    delay = self._network_error_handler.compute_delay(
                        attempt, self._retry_config
                    )
                    logger.warning(
                        f"{request.method} {request.url} failed ({network_error}), "
                        f"retrying in {delay:.1f}s"
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                raise network_error from e

            status = response.status_code
            logger.debug(f"{request.method} {request.url} -> {status}")

            rejected = status == 401 or is_sign_in_page(response)
            if not rejected and (status < 400 or status in request.accept_statuses):
                return response

            if rejected:
                if not refreshed_after_rejection:
                    # Does not consume the transient retry budget
                    refreshed_after_rejection = True
                    logger.debug(
                        f"Credentials rejected ({status}) for {key}, refreshing token"
                    )
                    await self.token_manager.force_refresh(key, token)
                    continue
                await self.token_manager.mark_invalid(key, "token rejected after refresh")
                raise ReauthRequiredError(
                    f"Account {key} needs to sign in again",
                    account_key=key,
                    details="the service rejected a freshly refreshed token",
                )

            error = self._network_error_handler.classify_response(response)
            if (
                self._network_error_handler.is_error_retryable(error)
                and attempt + 1 < self._retry_config.max_attempts
            ):
                delay = self._network_error_handler.compute_delay(
                    attempt, self._retry_config, getattr(error, "retry_after", None)
                )
                logger.warning(
                    f"{request.method} {request.url} returned {status}, "
                    f"retrying in {delay:.1f}s"
                )
                await self._sleep(delay)
                attempt += 1
                continue
            raise error

    def paginate(self, request: ApiRequest, items_key: str = "value") -> "PageSequence":
        return PageSequence(self, request, items_key, self.config.max_pages)

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session is not None and self._owns_session:
            await self._session.aclose()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class PageSequence:
    """Lazy sequence of result pages.

    Iterating starts from the first page every time, so a sequence can be
    re-read after the underlying collection changed.
    """

    def __init__(
        self,
        transport: RestTransport,
        request: ApiRequest,
        items_key: str = "value",
        max_pages: int = 50,
    ):
        self.transport = transport
        self.request = request
        self.items_key = items_key
        self.max_pages = max_pages

    def __aiter__(self) -> AsyncIterator[List[Dict[str, Any]]]:
        return self._pages()

    async def _pages(self) -> AsyncIterator[List[Dict[str, Any]]]:
        continuation: Optional[str] = None
        for page_number in range(self.max_pages):
            request = self.request
            if continuation:
                request = request.with_params(**{CONTINUATION_PARAM: continuation})

            response = await self.transport.execute(request)
            body = decode_json(response, default={})

            if isinstance(body, list):
                items = body
                body_token = None
            elif isinstance(body, dict):
                items = body.get(self.items_key) or []
                body_token = body.get(CONTINUATION_PARAM)
            else:
                raise MalformedResponseError(
                    "Malformed response",
                    status_code=response.status_code,
                    detail=f"expected a list or object from {request.url}",
                )

            yield items

            continuation = response.headers.get(CONTINUATION_HEADER) or body_token
            if not continuation:
                return

        logger.warning(
            f"Stopped paginating {self.request.url} after {self.max_pages} pages"
        )

    async def items(self) -> AsyncIterator[Dict[str, Any]]:
        async for page in self:
            for item in page:
                yield item

    async def collect(self) -> List[Dict[str, Any]]:
        return [item async for item in self.items()]


class ServiceApiClient:
    """Base for per-area API clients bound to one repository and account."""

    def __init__(
        self,
        transport: RestTransport,
        repository: RepositoryIdentity,
        account_key: AccountKey,
    ):
        self.transport = transport
        self.repository = repository
        self.account_key = account_key

    @property
    def api_version(self) -> str:
        return self.transport.config.api_version

    def project_url(self, path: str) -> str:
        project = quote(self.repository.project, safe="")
        return f"{self.repository.api_base_url}/{project}/_apis/{path.lstrip('/')}"

    def repository_url(self, path: str = "") -> str:
        repository = quote(self.repository.repository, safe="")
        suffix = f"/{path.lstrip('/')}" if path else ""
        return self.project_url(f"git/repositories/{repository}{suffix}")

    def build_request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        accept_statuses: Tuple[int, ...] = (),
    ) -> ApiRequest:
        merged = {"api-version": self.api_version}
        if params:
            merged.update({k: v for k, v in params.items() if v is not None})
        return ApiRequest(
            method=method,
            url=url,
            account_key=self.account_key,
            params=merged,
            json_body=json_body,
            headers=dict(headers or {}),
            accept_statuses=accept_statuses,
        )

    async def _get_json(self, url: str, **params: Any) -> Dict[str, Any]:
        response = await self.transport.execute(self.build_request("GET", url, params))
        return decode_object(response)
