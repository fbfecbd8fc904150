"""JWT claims reader for bearer tokens.

Access tokens issued by the identity platform are JWTs. Their claims tell
us who the token belongs to and when it expires, which is all we need when
a sign-in result omits either. Signatures are never verified here; the
service does that.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt

IDENTITY_CLAIMS = ("upn", "unique_name", "preferred_username", "email", "oid")
DISPLAY_NAME_CLAIMS = ("name", "given_name")


class TokenValidationError(Exception):
    """Exception raised when a token cannot be read as a JWT."""

    pass


class JWTTokenManager:
    """Reads expiry and identity claims from JWT access tokens."""

    def decode_token(self, token: str) -> Dict[str, Any]:
        """Decode JWT token without signature verification.

        Args:
            token: JWT token string

        Returns:
            Decoded token payload

        Raises:
            TokenValidationError: If token format is invalid
        """
        if not token or not isinstance(token, str):
            raise TokenValidationError("Token must be a non-empty string")

        try:
            payload: Dict[str, Any] = jwt.decode(
                token,
                options={"verify_signature": False, "verify_exp": False},
                algorithms=["RS256", "HS256"],
            )
        except jwt.InvalidTokenError as e:
            raise TokenValidationError(f"Invalid JWT token: {e}")
        return payload

    def is_jwt(self, token: str) -> bool:
        try:
            self.decode_token(token)
        except TokenValidationError:
            return False
        return True

    def get_token_expiry_time(self, token: str) -> Optional[datetime]:
        """Get the expiration time of a JWT token.

        Returns:
            Expiration datetime in UTC, or None if no expiration claim

        Raises:
            TokenValidationError: If token format is invalid
        """
        payload = self.decode_token(token)

        exp_claim = payload.get("exp")
        if exp_claim is None:
            return None

        try:
            return datetime.fromtimestamp(float(exp_claim), tz=timezone.utc)
        except (ValueError, TypeError, OverflowError):
            raise TokenValidationError(
                f"Invalid expiration timestamp format: {exp_claim}"
            )

    def get_token_identity(self, token: str) -> Optional[str]:
        """Extract the user identity (UPN, falling back to object id).

        Raises:
            TokenValidationError: If token format is invalid
        """
        payload = self.decode_token(token)
        for claim in IDENTITY_CLAIMS:
            value = payload.get(claim)
            if value:
                return str(value)
        return None

    def get_token_display_name(self, token: str) -> Optional[str]:
        payload = self.decode_token(token)
        for claim in DISPLAY_NAME_CLAIMS:
            value = payload.get(claim)
            if value:
                return str(value)
        return None
