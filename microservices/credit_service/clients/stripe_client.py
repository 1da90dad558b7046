"""
Stripe Payment Gateway Client

Implements PaymentGatewayProtocol on the stripe SDK. The SDK is blocking,
so every call runs in a worker thread via ``asyncio.to_thread``.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import stripe

from ..protocols import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

# PaymentIntent statuses that mean the charge went through
CONFIRMED_STATUSES = {"succeeded", "processing", "requires_capture"}

# Statuses a PaymentIntent can still be cancelled from
CANCELLABLE_STATUSES = {
    "requires_payment_method", "requires_confirmation", "requires_action",
    "requires_capture", "processing",
}

# Upper bound of the SDK's sleep between two network retries
MAX_RETRY_DELAY = 2.0


def request_budget(timeout: float, max_network_retries: int = 1):
    """
    Split an overall deadline into (retries, per-request timeout).

    Every attempt plus the sleeps between them ends before ``timeout``;
    retries are dropped when the deadline is too short to hold them.
    """
    retries = max_network_retries if timeout > 2 * MAX_RETRY_DELAY * max_network_retries else 0
    per_request = 0.9 * (timeout - retries * MAX_RETRY_DELAY) / (retries + 1)
    return retries, per_request


class StripeGateway:
    """Async facade over the Stripe API"""

    def __init__(
        self,
        secret_key: Optional[str],
        webhook_secret: Optional[str] = None,
        currency: str = "gbp",
        timeout: float = 15.0,
        max_network_retries: int = 1,
    ):
        """
        Initialize StripeGateway

        Args:
            secret_key: Stripe secret API key
            webhook_secret: Signing secret of the webhook endpoint
            currency: ISO currency of charges
            timeout: Deadline of one gateway call, retries included
            max_network_retries: Retries the SDK may spend inside the deadline
        """
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.max_network_retries, self.request_timeout = request_budget(timeout, max_network_retries)
        stripe.max_network_retries = self.max_network_retries
        stripe.default_http_client = stripe.RequestsClient(timeout=self.request_timeout)
        logger.info(
            f"StripeGateway initialized (currency: {self.currency}, "
            f"request timeout {self.request_timeout:.1f}s x {self.max_network_retries + 1})"
        )

    async def _call(self, operation: str, fn, *args, **kwargs):
        if not self.secret_key:
            raise ExternalServiceError("Stripe", "Stripe is not configured")
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.secret_key, **kwargs)
        except stripe.StripeError as e:
            logger.error(f"Stripe {operation} failed: {e.user_message or e}")
            raise ExternalServiceError("Stripe", f"Stripe {operation} failed") from e

    # ====================
    # Payments
    # ====================

    async def confirm_payment(
        self,
        amount: float,
        metadata: Dict[str, Any],
        payment_method: Optional[str] = None,
        customer: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Create and confirm a PaymentIntent for ``amount`` major currency units.

        Args:
            amount: Charge in major units (pounds)
            metadata: Correlation ids stored on the intent; ``currency`` overrides the default
            payment_method: Stripe payment method to charge
            customer: Stripe customer owning the payment method
            idempotency_key: Replays of the same key return the first intent

        Raises:
            ValidationError: If no payment method is given
            ExternalServiceError: If Stripe fails or the charge is not confirmed
        """
        if not payment_method:
            raise ValidationError({"payment_method_id": ["Payment method is required"]})

        metadata = dict(metadata)
        params: Dict[str, Any] = {
            "amount": int(round(amount * 100)),
            "currency": metadata.pop("currency", None) or self.currency,
            "confirm": True,
            "payment_method": payment_method,
            "automatic_payment_methods": {"enabled": True, "allow_redirects": "never"},
        }
        if customer:
            params["customer"] = customer
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        params["metadata"] = {key: str(value) for key, value in metadata.items()}

        intent = await self._call("payment", stripe.PaymentIntent.create, **params)
        if intent["status"] not in CONFIRMED_STATUSES:
            logger.warning(f"PaymentIntent {intent['id']} not confirmed: {intent['status']}")
            await self._call("payment cancellation", stripe.PaymentIntent.cancel, intent["id"])
            raise ExternalServiceError("Stripe", f"Payment not confirmed ({intent['status']})")

        logger.info(f"PaymentIntent {intent['id']} confirmed ({params['amount']} {params['currency']})")
        return {"payment_intent_id": intent["id"], "status": intent["status"]}

    async def cancel_payment(self, payment_intent_id: str) -> bool:
        """Cancel a pending PaymentIntent, or refund it once it has succeeded"""
        intent = await self._call("payment lookup", stripe.PaymentIntent.retrieve, payment_intent_id)
        status = intent["status"]
        if status == "succeeded":
            refund = await self._call("refund", stripe.Refund.create, payment_intent=payment_intent_id)
            logger.info(f"PaymentIntent {payment_intent_id} refunded ({refund['id']})")
            return True
        if status in CANCELLABLE_STATUSES:
            await self._call("payment cancellation", stripe.PaymentIntent.cancel, payment_intent_id)
            logger.info(f"PaymentIntent {payment_intent_id} cancelled")
            return True
        logger.info(f"PaymentIntent {payment_intent_id} left as {status}")
        return False

    # ====================
    # Customers & Subscriptions
    # ====================

    async def create_customer(self, email: str, name: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        customer = await self._call(
            "customer creation", stripe.Customer.create,
            email=email, name=name, metadata=metadata,
        )
        return {"id": customer["id"], "email": customer.get("email")}

    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        subscription = await self._call(
            "subscription creation", stripe.Subscription.create,
            customer=customer_id, items=[{"price": price_id}], metadata=metadata,
        )
        return {"id": subscription["id"], "status": subscription["status"]}

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = await self._call(
            "subscription cancellation", stripe.Subscription.cancel, subscription_id
        )
        return {"id": subscription["id"], "status": subscription["status"]}

    # ====================
    # Webhooks
    # ====================

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """
        Verify the Stripe-Signature header and decode the event.

        Raises:
            ValidationError: If the signature or payload is invalid
        """
        if not self.webhook_secret:
            raise ExternalServiceError("Stripe", "Stripe webhook secret is not configured")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8") if isinstance(payload, bytes) else payload,
                signature,
                self.webhook_secret,
                stripe.Webhook.DEFAULT_TOLERANCE,
            )
            return json.loads(payload)
        except (stripe.SignatureVerificationError, ValueError) as e:
            logger.warning(f"Rejected Stripe webhook: {e}")
            raise ValidationError({"signature": ["Invalid webhook signature"]}) from e


__all__ = ["StripeGateway", "CONFIRMED_STATUSES", "request_budget"]
