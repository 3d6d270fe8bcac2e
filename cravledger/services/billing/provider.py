"""Thin wrapper over the Stripe SDK calls the billing service makes.

Credits are never granted here: checkout only creates a session, and the
ledger entry is written when `checkout.session.completed` arrives.
"""

import stripe

from cravledger.common.config import CreditPackage, settings
from cravledger.common.logging import logger


class ProviderError(RuntimeError):
    """Raised when the payment provider rejects or fails a call."""


class StripeBillingProvider:
    def __init__(self, api_key: str | None = None, site_url: str | None = None) -> None:
        self.api_key = api_key if api_key is not None else settings.stripe_api_key
        self.site_url = site_url or settings.site_url

    def create_checkout_session(
        self, account_id: str, package_id: str, package: CreditPackage, customer_id: str | None = None
    ) -> dict:
        """Start a one-time credit purchase; metadata routes the webhook back to the account."""

        metadata = {
            "type": "credit_purchase",
            "account_id": account_id,
            "package_id": package_id,
            "credits": str(package.credits),
        }
        params = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": "usd",
                        "unit_amount": package.price_cents,
                        "product_data": {"name": f"{package.credits} credits"},
                    },
                    "quantity": 1,
                }
            ],
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "success_url": f"{self.site_url}/billing?checkout=success",
            "cancel_url": f"{self.site_url}/billing?checkout=canceled",
        }
        if customer_id:
            params["customer"] = customer_id
        try:
            session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        except stripe.StripeError as exc:
            logger.error("checkout_session_failed account_id=%s package_id=%s error=%s", account_id, package_id, exc)
            raise ProviderError(str(exc)) from exc
        return {"id": session["id"], "url": session["url"]}

    def cancel_subscription(self, provider_subscription_id: str, at_period_end: bool) -> None:
        try:
            if at_period_end:
                stripe.Subscription.modify(
                    provider_subscription_id, cancel_at_period_end=True, api_key=self.api_key
                )
            else:
                stripe.Subscription.cancel(provider_subscription_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise ProviderError(str(exc)) from exc

    def resume_subscription(self, provider_subscription_id: str) -> None:
        """Undo a scheduled period-end cancellation."""

        try:
            stripe.Subscription.modify(provider_subscription_id, cancel_at_period_end=False, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise ProviderError(str(exc)) from exc
