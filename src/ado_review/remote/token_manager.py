"""Token Lifecycle Manager.

Owns every ``Account`` record. Callers ask for a valid bearer token and get
one without blocking on I/O unless the token is about to expire, in which
case exactly one refresh runs per account no matter how many callers are
waiting on it.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..api_clients.jwt_token_manager import JWTTokenManager, TokenValidationError
from ..config import TokenConfig
from .credential_manager import CredentialStore
from .exceptions import AccountNotFoundError, AuthError, ReauthRequiredError
from .models import (
    Account,
    AccountKey,
    AccountStatus,
    AccountSummary,
    AuthResult,
    AuthType,
    utc_now,
)
from .oauth import TokenRefresher
from .url_parser import (
    canonical_organization_key,
    validate_and_normalize_organization_url,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class TokenLifecycleManager:
    """Keeps bearer tokens valid across long-lived sessions.

    Records are immutable and replaced whole. Every transition is written to
    the credential store before the in-memory record is replaced, so a crash
    never leaves memory ahead of disk.
    """

    def __init__(
        self,
        store: CredentialStore,
        refresher: TokenRefresher,
        config: Optional[TokenConfig] = None,
        clock: Clock = utc_now,
        jwt_manager: Optional[JWTTokenManager] = None,
    ):
        self.store = store
        self.refresher = refresher
        self.config = config or TokenConfig()
        self.clock = clock
        self.jwt_manager = jwt_manager or JWTTokenManager()

        self._accounts: Dict[AccountKey, Account] = {}
        self._refreshes: Dict[AccountKey, "asyncio.Task[str]"] = {}
        self._last_used: Dict[AccountKey, datetime] = {}
        self._store_lock: Optional[asyncio.Lock] = None

    @property
    def safety_margin(self) -> float:
        return float(self.config.safety_margin_seconds)

    def _lock(self) -> asyncio.Lock:
        if self._store_lock is None:
            self._store_lock = asyncio.Lock()
        return self._store_lock

    # Loading and registration

    async def load_accounts(self) -> int:
        """Load every stored account into memory. Returns the count."""
        accounts = await asyncio.to_thread(self.store.list_accounts)
        async with self._lock():
            self._accounts = {account.key: account for account in accounts}
        logger.info(f"Loaded {len(accounts)} account(s)")
        return len(accounts)

    async def add_account(
        self, organization_url: str, auth_result: AuthResult
    ) -> Account:
        """Create (or replace) the account for a successful sign-in.

        Identity, display name and expiry missing from ``auth_result`` are
        read from the access token's JWT claims when possible.

        Raises:
            URLValidationError: If the organization URL is invalid
            AuthError: If no identity can be determined
        """
        organization_url = validate_and_normalize_organization_url(organization_url)
        organization_key = canonical_organization_key(organization_url)
        now = self.clock()

        claims_identity = None
        claims_name = None
        claims_expiry = None
        try:
            claims_identity = self.jwt_manager.get_token_identity(
                auth_result.access_token
            )
            claims_name = self.jwt_manager.get_token_display_name(
                auth_result.access_token
            )
            claims_expiry = self.jwt_manager.get_token_expiry_time(
                auth_result.access_token
            )
        except TokenValidationError:
            logger.debug("Access token is not a JWT; using sign-in result only")

        identity = auth_result.identity or claims_identity
        if not identity:
            raise AuthError(
                "Cannot determine account identity",
                "The sign-in result carried no identity and the token has no identity claim",
            )

        if auth_result.expires_in is not None:
            expires_at: Optional[datetime] = now + timedelta(
                seconds=auth_result.expires_in
            )
        elif auth_result.auth_type == AuthType.PAT:
            expires_at = None
        else:
            expires_at = claims_expiry

        account = Account(
            organization_url=organization_url,
            organization_key=organization_key,
            identity=identity,
            display_name=auth_result.display_name or claims_name or identity,
            auth_type=auth_result.auth_type,
            access_token=auth_result.access_token,
            refresh_token=auth_result.refresh_token,
            expires_at=expires_at,
            last_refreshed_at=now,
            status=AccountStatus.VALID,
        )

        async with self._lock():
            await asyncio.to_thread(self.store.save, account)
            self._accounts[account.key] = account

        logger.info(f"Added account {account.key}")
        return account

    async def remove_account(self, key: AccountKey) -> None:
        """Remove an account from the store and from memory.

        Raises:
            AccountNotFoundError: If the key is unknown
        """
        async with self._lock():
            if key not in self._accounts:
                raise AccountNotFoundError(f"No account {key}")
            await asyncio.to_thread(self.store.delete, key)
            self._accounts.pop(key, None)
            self._last_used.pop(key, None)
        logger.info(f"Removed account {key}")

    # Queries

    def get_account(self, key: AccountKey) -> Account:
        account = self._accounts.get(key)
        if account is None:
            raise AccountNotFoundError(f"No account {key}")
        return account

    def list_accounts(self) -> List[Account]:
        return sorted(self._accounts.values(), key=lambda a: str(a.key))

    def accounts_for_organization(self, organization_key: str) -> List[Account]:
        return [
            account
            for account in self._accounts.values()
            if account.organization_key == organization_key
        ]

    def effective_status(self, account: Account) -> AccountStatus:
        """Stored status, except a valid token past its expiry reports expired."""
        if account.status == AccountStatus.VALID and account.is_expired(self.clock()):
            return AccountStatus.EXPIRED
        return account.status

    def summaries(self) -> List[AccountSummary]:
        return [
            account.summary().model_copy(
                update={"status": self.effective_status(account)}
            )
            for account in self.list_accounts()
        ]

    def record_use(self, key: AccountKey) -> None:
        self._last_used[key] = self.clock()

    def last_used_at(self, key: AccountKey) -> Optional[datetime]:
        return self._last_used.get(key)

    # Token acquisition

    async def acquire_valid_token(self, key: AccountKey) -> str:
        """Return a bearer token valid beyond the safety margin.

        Raises:
            ReauthRequiredError: If the account is invalid or refresh failed
            AccountNotFoundError: If the key is unknown
        """
        account = self.get_account(key)
        if account.status == AccountStatus.INVALID:
            raise ReauthRequiredError(
                f"Account {key} needs to sign in again", account_key=key
            )

        if not account.expires_within(self.clock(), self.safety_margin):
            return account.access_token

        logger.debug(f"Token for {key} expires within margin, refreshing")
        return await self._join_refresh(key)

    async def force_refresh(self, key: AccountKey, rejected_token: str) -> str:
        """Refresh after the service rejected ``rejected_token``.

        If a refresh already replaced the rejected token, the current token
        is returned without another refresh.

        Raises:
            ReauthRequiredError: If the account is invalid or refresh failed
        """
        account = self.get_account(key)
        if account.status == AccountStatus.INVALID:
            raise ReauthRequiredError(
                f"Account {key} needs to sign in again", account_key=key
            )

        if account.access_token != rejected_token and key not in self._refreshes:
            return account.access_token

        return await self._join_refresh(key)

    async def mark_invalid(self, key: AccountKey, reason: str = "") -> Account:
        account = self.get_account(key)
        return await self._invalidate(account, reason)

    async def _join_refresh(self, key: AccountKey) -> str:
        task = self._refreshes.get(key)
        if task is None:
            task = asyncio.ensure_future(self._refresh(key))
            self._refreshes[key] = task
            task.add_done_callback(lambda t, k=key: self._refresh_done(k, t))

        # A waiter being cancelled must not cancel the shared refresh
        return await asyncio.shield(task)

    def _refresh_done(self, key: AccountKey, task: "asyncio.Task[str]") -> None:
        if self._refreshes.get(key) is task:
            del self._refreshes[key]
        if not task.cancelled():
            # Mark the exception retrieved even when every waiter went away
            task.exception()

    async def _refresh(self, key: AccountKey) -> str:
        account = self.get_account(key)

        if account.auth_type == AuthType.PAT or not account.refresh_token:
            await self._invalidate(account, "token cannot be refreshed")
            raise ReauthRequiredError(
                f"Account {key} needs to sign in again",
                account_key=key,
                details="no refresh token",
            )

        try:
            grant = await self.refresher.refresh(account)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Token refresh failed for {key}: {e}")
            await self._invalidate(account, str(e))
            raise ReauthRequiredError(
                f"Account {key} needs to sign in again",
                account_key=key,
                details=str(e),
            ) from e

        now = self.clock()
        refreshed = account.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token or account.refresh_token,
                "expires_at": now + timedelta(seconds=grant.expires_in),
                "last_refreshed_at": now,
                "status": AccountStatus.VALID,
            }
        )

        async with self._lock():
            if key not in self._accounts:
                raise AccountNotFoundError(f"Account {key} was removed during refresh")
            await asyncio.to_thread(self.store.save, refreshed)
            self._accounts[key] = refreshed

        logger.info(f"Refreshed token for {key}, expires {refreshed.expires_at}")
        return refreshed.access_token

    async def _invalidate(self, account: Account, reason: str) -> Account:
        invalid = account.model_copy(update={"status": AccountStatus.INVALID})
        async with self._lock():
            if account.key not in self._accounts:
                return invalid
            await asyncio.to_thread(self.store.save, invalid)
            self._accounts[account.key] = invalid
        logger.info(f"Account {account.key} marked invalid: {reason}")
        return invalid
