"""
Public transaction API v1

Programmatic access to a user's transactions, authenticated by API key.
Writes notify the user's webhooks without waiting for delivery.
"""
from datetime import date as date_type

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy import select

from fingate.dependencies.api_key import get_webhook_sender, parse_body, with_api_auth
from fingate.models.transaction import Transaction, TransactionType
from fingate.services.api_guard import ApiKeyContext


router = APIRouter(prefix="/v1/transactions", tags=["v1"])


class CreateTransactionRequest(BaseModel):
    """Request model for creating a transaction."""
    amount: float = Field(..., gt=0)
    type: TransactionType
    category: str | None = Field(None, max_length=100)
    description: str | None = None
    date: date_type


class UpdateTransactionRequest(BaseModel):
    """Request model for editing a transaction. Omitted fields are unchanged."""
    amount: float | None = Field(None, gt=0)
    type: TransactionType | None = None
    category: str | None = Field(None, max_length=100)
    description: str | None = None
    date: date_type | None = None


async def get_owned_transaction(request: Request, db, user_id: str) -> Transaction:
    transaction_id = request.path_params["transaction_id"]
    stmt = select(Transaction).where(
        Transaction.id == transaction_id,
        Transaction.user_id == user_id,
    )
    result = await db.execute(stmt)
    transaction = result.scalar_one_or_none()
    if not transaction:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Transaction not found"
        )
    return transaction


@router.get("")
@with_api_auth("read")
async def list_transactions(request: Request, auth: ApiKeyContext):
    """List the key owner's transactions, newest first."""
    try:
        limit = min(max(int(request.query_params.get("limit", 50)), 1), 500)
    except ValueError:
        raise HTTPException(status_code=422, detail="limit must be an integer")

    async with request.app.state.session_factory() as db:
        stmt = (
            select(Transaction)
            .where(Transaction.user_id == auth.user_id)
            .order_by(Transaction.date.desc(), Transaction.created_at.desc())
            .limit(limit)
        )
        result = await db.execute(stmt)
        transactions = result.scalars().all()

    return {"transactions": [t.to_dict() for t in transactions]}


@router.post("")
@with_api_auth("write")
async def create_transaction(request: Request, auth: ApiKeyContext):
    """Create a transaction and emit ``transaction.created``."""
    body = await parse_body(request, CreateTransactionRequest)

    async with request.app.state.session_factory() as db:
        transaction = Transaction(user_id=auth.user_id, **body.model_dump())
        db.add(transaction)
        await db.commit()
        await db.refresh(transaction)

    data = transaction.to_dict()
    get_webhook_sender(request).notify("transaction.created", data, auth.user_id)

    return JSONResponse(status_code=status.HTTP_201_CREATED, content=data)


@router.put("/{transaction_id}")
@with_api_auth("write")
async def update_transaction(request: Request, auth: ApiKeyContext):
    """Edit a transaction and emit ``transaction.updated``."""
    body = await parse_body(request, UpdateTransactionRequest)

    async with request.app.state.session_factory() as db:
        transaction = await get_owned_transaction(request, db, auth.user_id)
        for field, value in body.model_dump(exclude_unset=True, exclude_none=True).items():
            setattr(transaction, field, value)
        await db.commit()
        await db.refresh(transaction)

    data = transaction.to_dict()
    get_webhook_sender(request).notify("transaction.updated", data, auth.user_id)

    return data


@router.delete("/{transaction_id}")
@with_api_auth("write")
async def delete_transaction(request: Request, auth: ApiKeyContext):
    """Delete a transaction and emit ``transaction.deleted``."""
    async with request.app.state.session_factory() as db:
        transaction = await get_owned_transaction(request, db, auth.user_id)
        data = transaction.to_dict()
        await db.delete(transaction)
        await db.commit()

    get_webhook_sender(request).notify("transaction.deleted", data, auth.user_id)

    return Response(status_code=status.HTTP_204_NO_CONTENT)
