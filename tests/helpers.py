"""Test doubles shared across the unit tests."""

import asyncio
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx

from ado_review.remote.models import Account, TokenGrant
from ado_review.remote.oauth import TokenRefresher

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

REMOTE_URL = "https://dev.azure.com/contoso/Web/_git/site"
API_ROOT = "https://dev.azure.com/contoso/Web/_apis"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeRefresher(TokenRefresher):
    """Scripted refresher.

    Each call pops the next outcome (a ``TokenGrant`` or an exception to
    raise); when the script is empty, a fresh one-hour token is issued.
    Setting ``gate`` holds every refresh until the event is set.
    """

    def __init__(self, outcomes: Optional[List[Union[TokenGrant, Exception]]] = None):
        self.outcomes = list(outcomes or [])
        self.calls: List[Account] = []
        self.gate: Optional[asyncio.Event] = None

    async def refresh(self, account: Account) -> TokenGrant:
        self.calls.append(account)
        if self.gate is not None:
            await self.gate.wait()
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return TokenGrant(
            access_token=f"refreshed-{len(self.calls)}",
            refresh_token=f"refresh-{len(self.calls)}",
            expires_in=3600,
        )


def reply(
    status: int = 200,
    json: Any = None,
    content: Optional[bytes] = None,
    headers: Optional[Dict[str, str]] = None,
) -> Callable[[httpx.Request], httpx.Response]:
    """Build a response factory for ``ScriptedServer.add``."""

    def build(request: httpx.Request) -> httpx.Response:
        if json is not None:
            return httpx.Response(status, json=json, headers=headers)
        return httpx.Response(status, content=content or b"", headers=headers)

    return build


class ScriptedServer:
    """Route table for ``httpx.MockTransport``.

    Responses registered for a route are served in order; the last one
    repeats. Unrouted requests get a 404 with a message body.
    """

    def __init__(self):
        self.routes: List[Tuple[str, "re.Pattern[str]", List[Callable]]] = []
        self.requests: List[httpx.Request] = []

    def add(self, method: str, path_pattern: str, *responses: Callable) -> None:
        self.routes.append((method.upper(), re.compile(path_pattern), list(responses)))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for method, pattern, responses in self.routes:
            if method == request.method and pattern.search(request.url.path):
                factory = responses.pop(0) if len(responses) > 1 else responses[0]
                return factory(request)
        return httpx.Response(404, json={"message": f"No route for {request.url.path}"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def calls(self, method: Optional[str] = None, path_pattern: str = "") -> List[httpx.Request]:
        pattern = re.compile(path_pattern)
        return [
            r
            for r in self.requests
            if (method is None or r.method == method) and pattern.search(r.url.path)
        ]
