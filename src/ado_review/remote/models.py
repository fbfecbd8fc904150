"""
Account data models.

Pydantic models for stored accounts. ``Account`` is frozen: every change
(refresh, invalidation) produces a new record that replaces the old one
whole, so readers never observe a half-updated account.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field


class AccountStatus(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


class AuthType(str, Enum):
    OAUTH = "oauth"
    PAT = "pat"


class AccountKey(NamedTuple):
    """Lookup key for an account: canonical organization key plus identity."""

    organization: str
    identity: str

    def __str__(self) -> str:
        return f"{self.identity}@{self.organization}"

    @classmethod
    def parse(cls, text: str) -> "AccountKey":
        """Parse the ``identity@organization`` form produced by ``str()``."""
        identity, sep, organization = text.rpartition("@")
        if not sep or not identity or not organization:
            raise ValueError(f"Invalid account key: {text!r}")
        return cls(organization=organization.lower(), identity=identity.lower())


class Account(BaseModel):
    """Stored account with its current bearer token."""

    model_config = ConfigDict(frozen=True)

    organization_url: str = Field(..., description="Organization URL as entered")
    organization_key: str = Field(..., description="Canonical organization key")
    identity: str = Field(..., description="User identity (UPN or object id)")
    display_name: str = Field(default="", description="Human readable name")
    auth_type: AuthType = Field(default=AuthType.OAUTH)
    access_token: str = Field(..., description="Current bearer token")
    refresh_token: Optional[str] = Field(None, description="OAuth refresh token")
    expires_at: Optional[datetime] = Field(
        None, description="Expiry of access_token; None when unknown (PAT)"
    )
    last_refreshed_at: datetime = Field(..., description="Last token (re)issue")
    status: AccountStatus = Field(default=AccountStatus.VALID)

    @property
    def key(self) -> AccountKey:
        return AccountKey(self.organization_key, self.identity.lower())

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def expires_within(self, now: datetime, seconds: float) -> bool:
        if self.expires_at is None:
            return False
        return (self.expires_at - now).total_seconds() <= seconds

    def summary(self) -> "AccountSummary":
        return AccountSummary(
            key=str(self.key),
            organization_url=self.organization_url,
            identity=self.identity,
            display_name=self.display_name,
            auth_type=self.auth_type,
            status=self.status,
            expires_at=self.expires_at,
        )


class AccountSummary(BaseModel):
    """Token-free view of an account, safe to hand to the UI."""

    model_config = ConfigDict(frozen=True)

    key: str
    organization_url: str
    identity: str
    display_name: str = ""
    auth_type: AuthType = AuthType.OAUTH
    status: AccountStatus
    expires_at: Optional[datetime] = None


class AuthResult(BaseModel):
    """Outcome of an out-of-band sign-in, consumed by ``add_account``."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = Field(
        None, description="Token lifetime in seconds, when the issuer reported it"
    )
    identity: Optional[str] = None
    display_name: Optional[str] = None
    auth_type: AuthType = AuthType.OAUTH


class TokenGrant(BaseModel):
    """Tokens returned by a successful refresh."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int = 3600


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
