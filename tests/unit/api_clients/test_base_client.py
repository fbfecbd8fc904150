"""Tests for the REST transport: auth header, retries, 401 handling, paging.

Requests go through a real ``httpx.AsyncClient`` backed by
``httpx.MockTransport``; retry sleeps are recorded instead of awaited.
"""

import httpx
import pytest

from ado_review.api_clients.base_client import (
    ApiRequest,
    RestTransport,
    ServiceApiClient,
    decode_json,
)
from ado_review.api_clients.pull_requests_client import PullRequestsAPIClient
from ado_review.config import TransportConfig
from ado_review.remote.exceptions import (
    AuthError,
    MalformedResponseError,
    NetworkConnectionError,
    NotFoundError,
    RateLimitedError,
    ReauthRequiredError,
    ServerError,
    ServiceError,
    URLValidationError,
)
from ado_review.remote.models import AccountStatus
from ado_review.remote.url_parser import parse_remote_url

from tests.helpers import API_ROOT, reply

URL = f"{API_ROOT}/git/repositories/site/pullrequests"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
async def account(register, make_account):
    account = make_account(expires_in=3600)
    await register(account)
    return account


@pytest.fixture
def transport(token_manager, server, sleep):
    config = TransportConfig(max_attempts=3, jitter_enabled=False, initial_delay=1.0)
    return RestTransport(token_manager, config=config, client=server.client(), sleep=sleep)


def _get(account, url=URL, **kwargs):
    return ApiRequest(method="GET", url=url, account_key=account.key, **kwargs)


class TestRestTransportExecute:
    async def test_bearer_token_and_params_are_sent(self, transport, server, account):
        server.add("GET", "/pullrequests$", reply(json={"value": []}))

        response = await transport.execute(_get(account, params={"api-version": "7.0"}))

        assert response.status_code == 200
        [request] = server.requests
        assert request.headers["Authorization"] == "Bearer token-0"
        assert request.url.params["api-version"] == "7.0"

    async def test_server_errors_are_retried_with_backoff(
        self, transport, server, account, sleep
    ):
        server.add(
            "GET",
            "/pullrequests$",
            reply(503, json={"message": "busy"}),
            reply(500, json={"message": "busy"}),
            reply(json={"value": [1]}),
        )

        response = await transport.execute(_get(account))

        assert response.json() == {"value": [1]}
        assert len(server.requests) == 3
        assert sleep.delays == [1.0, 2.0]

    async def test_retry_budget_is_bounded(self, transport, server, account, sleep):
        server.add("GET", "/pullrequests$", reply(503, json={"message": "down"}))

        with pytest.raises(ServerError) as exc_info:
            await transport.execute(_get(account))

        assert exc_info.value.status_code == 503
        assert len(server.requests) == 3
        assert len(sleep.delays) == 2

    async def test_rate_limit_honours_retry_after(self, transport, server, account, sleep):
        server.add(
            "GET",
            "/pullrequests$",
            reply(429, json={"message": "slow down"}, headers={"Retry-After": "4"}),
            reply(json={}),
        )

        await transport.execute(_get(account))

        assert sleep.delays == [4.0]

    async def test_exhausted_rate_limit_surfaces(self, transport, server, account):
        server.add("GET", "/pullrequests$", reply(429, json={}, headers={"Retry-After": "1"}))

        with pytest.raises(RateLimitedError):
            await transport.execute(_get(account))

    async def test_client_errors_are_not_retried(self, transport, server, account, sleep):
        server.add("GET", "/pullrequests$", reply(404, json={"message": "TF401019: missing"}))

        with pytest.raises(NotFoundError) as exc_info:
            await transport.execute(_get(account))

        assert exc_info.value.detail == "TF401019: missing"
        assert len(server.requests) == 1
        assert sleep.delays == []

    async def test_accepted_error_statuses_are_returned(self, transport, server, account):
        server.add("GET", "/pullrequests$", reply(304))

        response = await transport.execute(_get(account, accept_statuses=(304,)))

        assert response.status_code == 304

    async def test_connection_failures_are_retried_then_classified(
        self, token_manager, account, sleep
    ):
        attempts = []

        def refuse(request):
            attempts.append(request)
            raise httpx.ConnectError("Connection refused", request=request)

        transport = RestTransport(
            token_manager,
            config=TransportConfig(max_attempts=2, jitter_enabled=False),
            client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)),
            sleep=sleep,
        )

        with pytest.raises(NetworkConnectionError):
            await transport.execute(_get(account))
        assert len(attempts) == 2

    async def test_invalid_url_raises_validation_error(self, transport, account):
        with pytest.raises(URLValidationError):
            await transport.execute(_get(account, url="https://exa mple.com/\x00"))


class TestRestTransportUnauthorized:
    async def test_401_refreshes_once_and_retries(
        self, transport, server, account, refresher, sleep
    ):
        server.add(
            "GET",
            "/pullrequests$",
            reply(401, json={"message": "expired"}),
            reply(json={"value": []}),
        )

        response = await transport.execute(_get(account))

        assert response.status_code == 200
        assert len(refresher.calls) == 1
        assert [r.headers["Authorization"] for r in server.requests] == [
            "Bearer token-0",
            "Bearer refreshed-1",
        ]
        assert sleep.delays == []

    async def test_second_401_invalidates_and_requires_reauth(
        self, transport, server, account, token_manager, memory_store
    ):
        server.add("GET", "/pullrequests$", reply(401, json={"message": "no"}))

        with pytest.raises(ReauthRequiredError):
            await transport.execute(_get(account))

        assert len(server.requests) == 2
        assert token_manager.get_account(account.key).status == AccountStatus.INVALID
        assert memory_store.load(account.key).status == AccountStatus.INVALID

    async def test_sign_in_page_is_treated_as_rejected_credentials(
        self, transport, server, account, refresher
    ):
        sign_in = reply(
            203,
            content=b"<html>Sign in</html>",
            headers={"Content-Type": "text/html; charset=utf-8"},
        )
        server.add("GET", "/pullrequests$", sign_in, reply(json={"value": ["pr"]}))

        assert await transport.paginate(_get(account)).collect() == ["pr"]
        assert len(refresher.calls) == 1

    async def test_repeated_sign_in_page_requires_reauth(
        self, transport, server, account, token_manager
    ):
        server.add(
            "GET",
            "/pullrequests$",
            reply(203, content=b"<html>Sign in</html>", headers={"Content-Type": "text/html"}),
        )

        with pytest.raises(AuthError):
            await transport.execute(_get(account))
        assert token_manager.get_account(account.key).status == AccountStatus.INVALID

    async def test_invalid_account_makes_no_request(
        self, transport, server, account, token_manager
    ):
        await token_manager.mark_invalid(account.key)

        with pytest.raises(ReauthRequiredError):
            await transport.execute(_get(account))
        assert server.requests == []


class TestMalformedResponses:
    async def test_non_json_page_raises_malformed_response(
        self, transport, server, account
    ):
        server.add("GET", "/pullrequests$", reply(203, content=b"<html>Sign in</html>"))

        with pytest.raises(MalformedResponseError) as exc_info:
            await transport.paginate(_get(account)).collect()
        assert isinstance(exc_info.value, ServiceError)
        assert exc_info.value.status_code == 203

    async def test_scalar_page_body_is_malformed(self, transport, server, account):
        server.add("GET", "/pullrequests$", reply(json="unexpected"))

        with pytest.raises(MalformedResponseError):
            await transport.paginate(_get(account)).collect()

    async def test_object_endpoint_rejects_non_object_body(
        self, token_manager, server, account, repository
    ):
        server.add("GET", "/pullrequests/7$", reply(json=[1, 2]))
        client = PullRequestsAPIClient(
            RestTransport(token_manager, client=server.client()), repository, account.key
        )

        with pytest.raises(MalformedResponseError):
            await client.get_pull_request(7)

    def test_empty_body_uses_default_only_when_given(self):
        response = httpx.Response(200, content=b"")

        assert decode_json(response, default={}) == {}
        with pytest.raises(MalformedResponseError):
            decode_json(response)


class TestPagination:
    async def test_follows_continuation_header(self, transport, server, account):
        def page(request):
            token = request.url.params.get("continuationToken")
            if token is None:
                return httpx.Response(
                    200,
                    json={"value": [1, 2]},
                    headers={"x-ms-continuationtoken": "next"},
                )
            return httpx.Response(200, json={"value": [3]})

        server.add("GET", "/pullrequests$", page)

        items = await transport.paginate(_get(account)).collect()

        assert items == [1, 2, 3]
        assert server.requests[1].url.params["continuationToken"] == "next"

    async def test_follows_continuation_in_body(self, transport, server, account):
        server.add(
            "GET",
            "/pullrequests$",
            reply(json={"value": ["a"], "continuationToken": "c1"}),
            reply(json={"value": ["b"]}),
        )

        assert await transport.paginate(_get(account)).collect() == ["a", "b"]

    async def test_sequence_can_be_iterated_again(self, transport, server, account):
        server.add("GET", "/pullrequests$", reply(json={"value": ["x"]}))
        pages = transport.paginate(_get(account))

        assert await pages.collect() == ["x"]
        assert await pages.collect() == ["x"]
        assert len(server.requests) == 2

    async def test_page_limit_stops_runaway_paging(
        self, token_manager, server, account
    ):
        server.add(
            "GET",
            "/pullrequests$",
            reply(json={"value": [0]}, headers={"x-ms-continuationtoken": "again"}),
        )
        transport = RestTransport(
            token_manager, config=TransportConfig(max_pages=3), client=server.client()
        )

        assert await transport.paginate(_get(account)).collect() == [0, 0, 0]


class TestServiceApiClient:
    def test_urls_are_scoped_and_quoted(self, token_manager, make_account):
        repository = parse_remote_url("https://dev.azure.com/contoso/My%20Project/_git/site")
        client = ServiceApiClient(
            RestTransport(token_manager), repository, make_account().key
        )

        assert client.repository_url("pullrequests") == (
            "https://dev.azure.com/contoso/My%20Project/_apis/git/repositories/site/pullrequests"
        )
        request = client.build_request(
            "GET", client.project_url("build/builds"), params={"a": None, "b": 1}
        )
        assert request.params == {"api-version": "7.0", "b": 1}
