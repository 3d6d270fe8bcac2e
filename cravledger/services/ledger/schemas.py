"""API request/response schemas for ledger endpoints."""

from datetime import datetime

from pydantic import BaseModel, Field


class SpendRequest(BaseModel):
    """Body accepted by `POST /accounts/{account_id}/spend`."""

    amount: int = Field(gt=0)
    kind: str = Field(default="spend", pattern="^(spend|usage)$")
    description: str = ""
    idempotency_key: str | None = Field(default=None, min_length=5)
    metadata: dict = Field(default_factory=dict)


class SpendResponse(BaseModel):
    approved: bool
    remaining_balance: int
    entry_id: str | None
    duplicate: bool = False


class AdjustmentRequest(BaseModel):
    """Admin correction; positive grants credits, negative removes them."""

    amount: int
    reason: str = Field(min_length=1)
    actor: str = Field(min_length=1)
    idempotency_key: str | None = Field(default=None, min_length=5)


class BalanceResponse(BaseModel):
    account_id: str
    balance: int
    lifetime_earned: int
    lifetime_spent: int
    as_of_entry_id: str | None


class EntryResponse(BaseModel):
    entry_id: str
    account_id: str
    seq: int
    amount: int
    kind: str
    source_event_id: str | None
    description: str
    created_at: datetime
