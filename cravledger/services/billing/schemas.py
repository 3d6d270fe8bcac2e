"""Wire schemas for provider webhooks and billing endpoints."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class WebhookData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: dict[str, Any]
    previous_attributes: dict[str, Any] | None = None


class ProviderEvent(BaseModel):
    """Provider event envelope; only `id`, `type` and `data.object` are consumed."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int | None = None
    data: WebhookData


class CancelRequest(BaseModel):
    reason: str | None = None
    at_period_end: bool = False


class CheckoutRequest(BaseModel):
    account_id: str = Field(min_length=1)
    package_id: str = Field(min_length=1)
    customer_id: str | None = None


class SubscriptionResponse(BaseModel):
    account_id: str
    plan_id: str
    status: str
    provider_subscription_id: str | None
    cancel_at_period_end: bool
    current_period_end: str | None
