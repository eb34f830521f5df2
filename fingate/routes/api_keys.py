"""
API key management routes.

Lets a user create, list, deactivate and delete their API keys.
The full key is only ever returned by the create call.
"""
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Response, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from fingate.database import get_db
from fingate.dependencies.auth import TokenPayload, get_current_user
from fingate.models.api_key import ApiKey
from fingate.services.api_key_service import KNOWN_SCOPES, ApiKeyService


router = APIRouter(prefix="/api/keys", tags=["api-keys"])


class CreateApiKeyRequest(BaseModel):
    """Request model for creating an API key."""
    name: str = Field(..., min_length=1, max_length=100)
    scopes: list[str] = Field(default_factory=lambda: ["read"], min_length=1)
    rate_limit: int = Field(60, ge=1, le=10000)
    expires_in_days: int | None = Field(None, ge=1, le=365)

    @field_validator("scopes")
    @classmethod
    def check_scopes(cls, scopes: list[str]) -> list[str]:
        unknown = set(scopes) - KNOWN_SCOPES
        if unknown:
            raise ValueError(f"Unknown scopes: {', '.join(sorted(unknown))}")
        return scopes


class ApiKeyResponse(BaseModel):
    """Response model for an API key (never includes the key itself)."""
    id: str
    name: str
    key_prefix: str
    scopes: list[str]
    rate_limit: int
    is_active: bool
    expires_at: datetime | None = None
    last_used_at: datetime | None = None
    created_at: datetime | None = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Response after creating an API key, carrying the full key once."""
    key: str


def key_to_response(api_key: ApiKey) -> ApiKeyResponse:
    """Convert ApiKey model to ApiKeyResponse."""
    return ApiKeyResponse(
        id=api_key.id,
        name=api_key.name,
        key_prefix=api_key.key_prefix,
        scopes=list(api_key.scopes or []),
        rate_limit=api_key.rate_limit,
        is_active=api_key.is_active,
        expires_at=api_key.expires_at,
        last_used_at=api_key.last_used_at,
        created_at=api_key.created_at,
    )


@router.get("", response_model=list[ApiKeyResponse])
async def list_api_keys(
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """List the current user's API keys."""
    keys = await ApiKeyService(db).list_api_keys(token.sub)
    return [key_to_response(k) for k in keys]


@router.post("", response_model=ApiKeyCreatedResponse, status_code=status.HTTP_201_CREATED)
async def create_api_key(
    request: CreateApiKeyRequest,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a new API key.

    The full key is returned only once and should be saved securely.
    """
    result = await ApiKeyService(db).create_api_key(
        user_id=token.sub,
        name=request.name,
        scopes=request.scopes,
        rate_limit=request.rate_limit,
        expires_in_days=request.expires_in_days,
    )
    return ApiKeyCreatedResponse(
        **key_to_response(result.api_key).model_dump(),
        key=result.key,
    )


@router.post("/{key_id}/deactivate", response_model=ApiKeyResponse)
async def deactivate_api_key(
    key_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Deactivate an API key. It stays listed but can no longer authenticate."""
    api_key = await ApiKeyService(db).deactivate_api_key(key_id, token.sub)
    if api_key is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found"
        )
    return key_to_response(api_key)


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT, response_class=Response)
async def delete_api_key(
    key_id: str,
    token: TokenPayload = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Permanently delete an API key."""
    deleted = await ApiKeyService(db).delete_api_key(key_id, token.sub)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="API key not found"
        )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
