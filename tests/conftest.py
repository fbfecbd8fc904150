"""
Shared pytest fixtures for ADO Review tests.

Provides a controllable clock, in-memory credential storage, account and
JWT factories, a scripted refresher and a scripted HTTP server that runs
behind ``httpx.MockTransport`` so the real httpx client stack is exercised.
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import jwt
import pytest

from ado_review.remote.credential_manager import InMemoryCredentialStore
from ado_review.remote.models import Account, AccountStatus, AuthType
from ado_review.remote.token_manager import TokenLifecycleManager
from ado_review.remote.url_parser import parse_remote_url

from tests.helpers import REMOTE_URL, FakeClock, FakeRefresher, ScriptedServer


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def refresher() -> FakeRefresher:
    return FakeRefresher()


@pytest.fixture
def server() -> ScriptedServer:
    return ScriptedServer()


@pytest.fixture
def repository():
    return parse_remote_url(REMOTE_URL)


@pytest.fixture
def make_jwt() -> Callable[..., str]:
    """Factory for HS256 tokens carrying identity and expiry claims."""

    def _make(
        upn: Optional[str] = "alice@contoso.com",
        name: Optional[str] = "Alice Example",
        exp: Optional[datetime] = None,
        **claims: Any,
    ) -> str:
        payload: Dict[str, Any] = dict(claims)
        if upn:
            payload["upn"] = upn
        if name:
            payload["name"] = name
        if exp is not None:
            payload["exp"] = int(exp.timestamp())
        return jwt.encode(payload, "test-secret", algorithm="HS256")

    return _make


@pytest.fixture
def make_account(clock: FakeClock) -> Callable[..., Account]:
    def _make(
        organization: str = "contoso",
        identity: str = "alice@contoso.com",
        expires_in: Optional[float] = 3600,
        refresh_token: Optional[str] = "refresh-0",
        access_token: str = "token-0",
        status: AccountStatus = AccountStatus.VALID,
        auth_type: AuthType = AuthType.OAUTH,
        last_refreshed_at: Optional[datetime] = None,
        organization_url: Optional[str] = None,
    ) -> Account:
        return Account(
            organization_url=organization_url or f"https://dev.azure.com/{organization}",
            organization_key=organization.lower(),
            identity=identity,
            display_name=identity.split("@")[0].title(),
            auth_type=auth_type,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=(
                clock() + timedelta(seconds=expires_in) if expires_in is not None else None
            ),
            last_refreshed_at=last_refreshed_at or clock(),
            status=status,
        )

    return _make


@pytest.fixture
def token_manager(memory_store, refresher, clock) -> TokenLifecycleManager:
    return TokenLifecycleManager(memory_store, refresher, clock=clock)


@pytest.fixture
def register(memory_store, token_manager):
    """Persist accounts and load them into the token manager."""

    async def _register(*accounts: Account) -> TokenLifecycleManager:
        for account in accounts:
            memory_store.save(account)
        await token_manager.load_accounts()
        return token_manager

    return _register
