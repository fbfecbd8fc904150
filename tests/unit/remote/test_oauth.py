"""Tests for the OAuth refresh-token grant."""

from urllib.parse import parse_qs

import httpx
import pytest

from ado_review.config import TokenConfig
from ado_review.remote.exceptions import AuthError, NetworkConnectionError, ServerError
from ado_review.remote.oauth import OAuthTokenRefresher

from tests.helpers import reply

TOKEN_PATH = r"/organizations/oauth2/v2.0/token$"


class TestOAuthTokenRefresher:
    @pytest.fixture
    def refresher(self, server):
        return OAuthTokenRefresher(TokenConfig(), client=server.client())

    async def test_successful_refresh_posts_form_and_returns_grant(
        self, refresher, server, make_account
    ):
        server.add(
            "POST",
            TOKEN_PATH,
            reply(
                json={
                    "access_token": "new-access",
                    "refresh_token": "new-refresh",
                    "expires_in": 4000,
                }
            ),
        )

        grant = await refresher.refresh(make_account(refresh_token="old-refresh"))

        assert grant.access_token == "new-access"
        assert grant.refresh_token == "new-refresh"
        assert grant.expires_in == 4000

        [request] = server.requests
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["old-refresh"]
        assert form["client_id"] == [TokenConfig().client_id]
        assert "offline_access" in form["scope"][0]
        assert request.headers["content-type"].startswith(
            "application/x-www-form-urlencoded"
        )

    async def test_missing_expires_in_defaults_to_an_hour(
        self, refresher, server, make_account
    ):
        server.add("POST", TOKEN_PATH, reply(json={"access_token": "a"}))

        grant = await refresher.refresh(make_account())

        assert grant.expires_in == 3600
        assert grant.refresh_token is None

    async def test_invalid_grant_raises_auth_error_with_detail(
        self, refresher, server, make_account
    ):
        server.add(
            "POST",
            TOKEN_PATH,
            reply(400, json={"error": "invalid_grant", "error_description": "AADSTS70008: expired"}),
        )

        with pytest.raises(AuthError) as exc_info:
            await refresher.refresh(make_account())
        assert "AADSTS70008" in str(exc_info.value)

    async def test_server_failure_is_classified(self, refresher, server, make_account):
        server.add("POST", TOKEN_PATH, reply(503, json={"message": "unavailable"}))

        with pytest.raises(ServerError):
            await refresher.refresh(make_account())

    async def test_no_refresh_token_fails_without_request(
        self, refresher, server, make_account
    ):
        with pytest.raises(AuthError):
            await refresher.refresh(make_account(refresh_token=None))
        assert server.requests == []

    async def test_connection_failure_is_classified(self, make_account):
        def refuse(request):
            raise httpx.ConnectError("Connection refused", request=request)

        refresher = OAuthTokenRefresher(
            client=httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        )

        with pytest.raises(NetworkConnectionError):
            await refresher.refresh(make_account())
