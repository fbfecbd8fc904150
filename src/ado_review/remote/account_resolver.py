"""Route a repository to the account that should authenticate its requests."""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .exceptions import NoMatchingAccountError
from .models import Account, AccountStatus
from .token_manager import TokenLifecycleManager
from .url_parser import RepositoryIdentity

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)

PrecedenceKey = Callable[[Account, Optional[datetime]], Any]


def default_precedence(account: Account, last_used: Optional[datetime]) -> Any:
    """Sort key, highest wins: usable first, then most recently refreshed."""
    return (account.status != AccountStatus.INVALID, account.last_refreshed_at)


def most_recently_used_precedence(
    account: Account, last_used: Optional[datetime]
) -> Any:
    """Sort key that keeps using the account picked last in this session.

    Accounts not used yet fall back to refresh time.
    """
    return (
        account.status != AccountStatus.INVALID,
        last_used or _EPOCH,
        account.last_refreshed_at,
    )


class AccountResolver:
    """Selects one account for a repository's organization."""

    def __init__(
        self,
        token_manager: TokenLifecycleManager,
        precedence: PrecedenceKey = default_precedence,
    ):
        self.token_manager = token_manager
        self.precedence = precedence

    def resolve(self, repository: RepositoryIdentity) -> Account:
        """Pick the account for ``repository`` and record its use.

        Raises:
            NoMatchingAccountError: If no account exists for the organization
        """
        organization_key = repository.organization_key
        candidates = self.token_manager.accounts_for_organization(organization_key)
        if not candidates:
            raise NoMatchingAccountError(
                f"No account for organization '{organization_key}'",
                f"Add an account for {repository.server_url}",
            )

        chosen = max(
            candidates,
            key=lambda a: self.precedence(a, self.token_manager.last_used_at(a.key)),
        )
        self.token_manager.record_use(chosen.key)

        if len(candidates) > 1:
            logger.debug(
                f"Resolved {repository} to {chosen.key} among {len(candidates)} accounts"
            )
        return chosen
