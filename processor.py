"""
Payment processor boundary, backed by Stripe.

Routes receive a processor through the `get_processor` dependency so tests
can swap in a fake. Any Stripe failure surfaces as ProcessorError.
"""
import logging
from typing import Optional

import stripe

import config
from errors import InvalidInput, ProcessorError

log = logging.getLogger(__name__)

STRIPE_REFUND_REASONS = {"duplicate", "fraudulent", "requested_by_customer"}


def _plain(obj) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _card_details(intent) -> Optional[dict]:
    method = intent.get("payment_method")
    if not method or isinstance(method, str):
        return None
    card = method.get("card")
    if not card:
        return None
    return {
        "brand": card.get("brand"),
        "last4": card.get("last4"),
        "exp_month": card.get("exp_month"),
        "exp_year": card.get("exp_year"),
        "funding": card.get("funding"),
    }


def intent_view(intent) -> dict:
    """Flatten a Stripe PaymentIntent (or webhook payload object) into plain data."""
    error = intent.get("last_payment_error") or {}
    return {
        "id": intent.get("id"),
        "clientSecret": intent.get("client_secret"),
        "status": intent.get("status"),
        "card": _card_details(intent),
        "failureCode": error.get("code"),
        "failureMessage": error.get("message"),
    }


class StripeProcessor:
    def __init__(self, api_key: str = config.STRIPE_SECRET_KEY,
                 webhook_secret: str = config.STRIPE_WEBHOOK_SECRET):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def create_intent(self, amount_cents: int, currency: str, metadata: dict, description: str) -> dict:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                description=description,
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            log.error("Stripe intent creation failed: %s", e)
            raise ProcessorError(f"Payment creation failed: {e.user_message or str(e)}")
        return intent_view(_plain(intent))

    def retrieve_intent(self, intent_id: str) -> dict:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, expand=["payment_method"], api_key=self.api_key)
        except stripe.StripeError as e:
            log.error("Stripe intent retrieval failed for %s: %s", intent_id, e)
            raise ProcessorError(f"Payment confirmation failed: {e.user_message or str(e)}")
        return intent_view(_plain(intent))

    def create_refund(self, intent_id: str, amount_cents: int, reason: str, metadata: dict) -> dict:
        params = {"payment_intent": intent_id, "amount": amount_cents, "metadata": metadata}
        if reason in STRIPE_REFUND_REASONS:
            params["reason"] = reason
        try:
            refund = stripe.Refund.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            log.error("Stripe refund failed for %s: %s", intent_id, e)
            raise ProcessorError(f"Refund processing failed: {e.user_message or str(e)}")
        return {"id": refund.id, "status": refund.status}

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            log.warning("Webhook signature verification failed: %s", e)
            raise InvalidInput(f"Webhook Error: {e}")
        return {
            "id": event["id"],
            "type": event["type"],
            "object": _plain(event["data"]["object"]),
        }


_processor = None


def get_processor():
    global _processor
    if _processor is None:
        _processor = StripeProcessor()
    return _processor
