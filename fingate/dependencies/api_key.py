"""
API key protection for public v1 routes.

Usage:
    @router.get("/things")
    @with_api_auth("read")
    async def list_things(request: Request, auth: ApiKeyContext):
        ...

The decorated function receives the verified ApiKeyContext; FastAPI only
sees a ``(request: Request)`` endpoint.
"""
from typing import Type, TypeVar

from fastapi import HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError

from fingate.services.api_guard import ApiGuard, Handler
from fingate.services.webhook_service import WebhookSender

ModelT = TypeVar("ModelT", bound=BaseModel)


def get_api_guard(request: Request) -> ApiGuard:
    return request.app.state.api_guard


def get_webhook_sender(request: Request) -> WebhookSender:
    return request.app.state.webhook_sender


def with_api_auth(scope: str, rate_limit: int | None = None):
    """
    Wrap a handler in the API guard.

    Args:
        scope: Scope the API key must hold
        rate_limit: Per-minute ceiling overriding the key's own limit
    """

    def decorator(handler: Handler):
        async def endpoint(request: Request) -> Response:
            guard = get_api_guard(request)
            return await guard.handle_request(request, handler, scope, ceiling=rate_limit)

        endpoint.__name__ = handler.__name__
        endpoint.__doc__ = handler.__doc__
        return endpoint

    return decorator


async def parse_body(request: Request, model: Type[ModelT]) -> ModelT:
    """Validate a JSON request body, raising 422 on bad input."""
    try:
        data = await request.json()
    except ValueError:
        raise HTTPException(
            status_code=422,
            detail="Request body must be valid JSON"
        )

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise HTTPException(
            status_code=422,
            detail=e.errors(include_url=False, include_context=False)
        )
