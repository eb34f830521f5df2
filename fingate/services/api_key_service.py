"""
API key service.

Generates, hashes and manages API keys for their owner.

SECURITY: Only the SHA-256 hash of a key is ever persisted. Every query
is filtered by the owning user_id.
"""
import hashlib
import secrets
import string
from dataclasses import dataclass
from datetime import timedelta

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from fingate.config import settings
from fingate.models.api_key import ApiKey
from fingate.models.base import utcnow

logger = structlog.get_logger()

KEY_ALPHABET = string.ascii_letters + string.digits
WILDCARD_SCOPE = "*"
KNOWN_SCOPES = {"read", "write", WILDCARD_SCOPE}


def generate_api_key() -> str:
    """Generate a new plaintext key: prefix + random alphanumeric tail."""
    tail = "".join(secrets.choice(KEY_ALPHABET) for _ in range(settings.API_KEY_RANDOM_LENGTH))
    return f"{settings.API_KEY_PREFIX}{tail}"


def hash_api_key(key: str) -> str:
    """One-way hash used for storage and lookup."""
    return hashlib.sha256(key.encode()).hexdigest()


@dataclass
class ApiKeyResult:
    """Result of API key creation."""
    api_key: ApiKey
    key: str  # Full key (only returned once)


class ApiKeyService:
    """Owner-facing API key management."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_api_key(
        self,
        user_id: str,
        name: str,
        scopes: list[str] | None = None,
        rate_limit: int | None = None,
        expires_in_days: int | None = None,
    ) -> ApiKeyResult:
        """
        Create a new API key.

        Args:
            user_id: Owner of the key
            name: Human label
            scopes: Granted scopes (defaults to API_KEY_DEFAULT_SCOPES)
            rate_limit: Requests per rolling minute (per endpoint)
            expires_in_days: Optional lifetime

        Returns:
            ApiKeyResult carrying the stored record and the plaintext key
        """
        key = generate_api_key()

        expires_at = None
        if expires_in_days:
            expires_at = utcnow() + timedelta(days=expires_in_days)

        api_key = ApiKey(
            user_id=user_id,
            name=name,
            key_hash=hash_api_key(key),
            key_prefix=key[:8],
            scopes=list(scopes or settings.API_KEY_DEFAULT_SCOPES),
            rate_limit=rate_limit or settings.API_KEY_DEFAULT_RATE_LIMIT,
            is_active=True,
            expires_at=expires_at,
        )
        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info("api_key_created", key_id=api_key.id, user_id=user_id, name=name)

        return ApiKeyResult(api_key=api_key, key=key)

    async def list_api_keys(self, user_id: str) -> list[ApiKey]:
        """List a user's API keys, newest first."""
        stmt = (
            select(ApiKey)
            .where(ApiKey.user_id == user_id)
            .order_by(ApiKey.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def get_api_key(self, key_id: str, user_id: str) -> ApiKey | None:
        stmt = select(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user_id)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def deactivate_api_key(self, key_id: str, user_id: str) -> ApiKey | None:
        """
        Soft-revoke an API key.

        Returns:
            The updated key, or None if the user owns no such key
        """
        api_key = await self.get_api_key(key_id, user_id)
        if api_key is None:
            return None

        api_key.is_active = False
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info("api_key_deactivated", key_id=key_id, user_id=user_id)
        return api_key

    async def delete_api_key(self, key_id: str, user_id: str) -> bool:
        """Hard-delete an API key. Returns False if the user owns no such key."""
        stmt = delete(ApiKey).where(ApiKey.id == key_id, ApiKey.user_id == user_id)
        result = await self.db.execute(stmt)
        await self.db.commit()

        deleted = result.rowcount > 0
        if deleted:
            logger.info("api_key_deleted", key_id=key_id, user_id=user_id)
        return deleted
