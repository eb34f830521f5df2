"""
JWT token service for owner authentication on management routes.

Tokens are issued by the platform's login flow; FinGate only verifies
them. ``create_token`` exists for that flow and for tests.
"""
from datetime import datetime, timedelta, timezone

import structlog
from jose import JWTError, jwt

from fingate.config import settings

logger = structlog.get_logger()

REQUIRED_CLAIMS = ("sub", "email", "exp")


class JWTService:
    """Signs and verifies owner tokens with a shared HMAC secret."""

    def __init__(self, secret_key: str | None = None, algorithm: str | None = None):
        self.secret_key = secret_key or settings.JWT_SECRET_KEY
        self.algorithm = algorithm or settings.JWT_ALGORITHM

    def create_token(self, user_id: str, email: str, expires_in: timedelta | None = None) -> str:
        """
        Create a token identifying ``user_id``.

        Args:
            user_id: Owner's unique ID (``sub`` claim)
            email: Owner's email
            expires_in: Lifetime; defaults to JWT_EXPIRATION_MINUTES
        """
        lifetime = expires_in or timedelta(minutes=settings.JWT_EXPIRATION_MINUTES)
        claims = {
            "sub": user_id,
            "email": email,
            "exp": datetime.now(timezone.utc) + lifetime,
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_token(self, token: str) -> dict | None:
        """
        Decode ``token`` if its signature and expiry check out.

        Returns:
            The claims, or None if the token is invalid, expired or lacks
            an owner identity.
        """
        try:
            claims = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.debug("owner_token_rejected", error=str(e))
            return None

        missing = [claim for claim in REQUIRED_CLAIMS if not claims.get(claim)]
        if missing:
            logger.debug("owner_token_rejected", missing_claims=missing)
            return None
        return claims
