"""
Membership Service - Business Logic Layer

Memberships link a user to a Stripe customer and subscription. Subscription
lifecycle webhooks update the membership status, and a paid invoice grants
the plan's monthly subscription credits.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.config import ServiceConfig

from .events.publishers import publish_membership_status_changed
from .ledger import check_user_id, raise_if_errors
from .models import Membership, PlanTypeEnum, SubscriptionStatusEnum, WebhookResult
from .protocols import (
    BusinessRuleViolation,
    ConflictError,
    CreditServiceError,
    EventBusProtocol,
    ExternalServiceError,
    MembershipRepositoryProtocol,
    OperationFailedError,
    PaymentGatewayProtocol,
    ResourceNotFound,
)

logger = logging.getLogger(__name__)

# Stripe subscription status -> membership status
STRIPE_STATUS_MAP = {
    "active": SubscriptionStatusEnum.ACTIVE,
    "trialing": SubscriptionStatusEnum.ACTIVE,
    "past_due": SubscriptionStatusEnum.PAST_DUE,
    "unpaid": SubscriptionStatusEnum.UNPAID,
    "canceled": SubscriptionStatusEnum.CANCELLED,
    "incomplete": SubscriptionStatusEnum.INACTIVE,
    "incomplete_expired": SubscriptionStatusEnum.INACTIVE,
    "paused": SubscriptionStatusEnum.INACTIVE,
}


class MembershipService:
    """
    Membership Service - Core business logic

    Handles:
    - Membership CRUD
    - Stripe customer and subscription management
    - Stripe webhook processing and subscription credit grants
    """

    def __init__(
        self,
        repository: MembershipRepositoryProtocol,
        payment_gateway: Optional[PaymentGatewayProtocol] = None,
        credit_service=None,
        event_bus: Optional[EventBusProtocol] = None,
        config: Optional[ServiceConfig] = None,
    ):
        """
        Initialize membership service.

        Args:
            repository: Membership repository
            payment_gateway: Stripe gateway (optional)
            credit_service: CreditService used for subscription credit grants
            event_bus: Event bus for publishing events (optional)
            config: Service settings (platform name, plan credits)
        """
        self.repository = repository
        self.payment_gateway = payment_gateway
        self.credit_service = credit_service
        self.event_bus = event_bus
        self.config = config or ServiceConfig()

    def _require_gateway(self) -> PaymentGatewayProtocol:
        if self.payment_gateway is None:
            raise ExternalServiceError("Stripe", "Payment gateway is not configured")
        return self.payment_gateway

    async def _update(
        self, membership: Membership, update_data: Dict[str, Any], source_event: Optional[str] = None
    ) -> Membership:
        try:
            updated = await self.repository.update_membership(membership.membership_id, update_data)
        except Exception as e:
            logger.error(f"Failed to update membership {membership.membership_id}: {e}")
            raise OperationFailedError("update_membership", membership_id=membership.membership_id) from e

        if updated.subscription_status != membership.subscription_status:
            logger.info(
                f"Membership {membership.membership_id}: {membership.subscription_status.value} -> "
                f"{updated.subscription_status.value}"
            )
            await publish_membership_status_changed(
                self.event_bus, updated, membership.subscription_status.value, source_event
            )
        return updated

    # ====================
    # Membership CRUD
    # ====================

    async def create_membership(
        self,
        user_id: str,
        stripe_customer_id: Optional[str] = None,
        plan_type: PlanTypeEnum = PlanTypeEnum.BASIC,
        subscription_status: SubscriptionStatusEnum = SubscriptionStatusEnum.INACTIVE,
    ) -> Membership:
        """
        Create a membership.

        Raises:
            ConflictError: If the user already has a membership
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        raise_if_errors(errors)

        if await self.repository.get_membership_by_user_id(user_id):
            raise ConflictError("User already has membership", details={"user_id": user_id})

        try:
            membership = await self.repository.create_membership({
                "user_id": user_id,
                "stripe_customer_id": stripe_customer_id,
                "plan_type": plan_type,
                "subscription_status": subscription_status,
                "active": True,
            })
        except Exception as e:
            logger.error(f"Failed to create membership for user {user_id}: {e}")
            raise OperationFailedError("create_membership", user_id=user_id) from e

        logger.info(f"Created membership {membership.membership_id} for user {user_id}")
        return membership

    async def get_membership(self, membership_id: str) -> Membership:
        membership = await self.repository.get_membership_by_id(membership_id)
        if membership is None:
            raise ResourceNotFound("Membership", membership_id)
        return membership

    async def get_membership_by_user_id(self, user_id: str) -> Membership:
        membership = await self.repository.get_membership_by_user_id(user_id)
        if membership is None:
            raise ResourceNotFound("Membership", user_id)
        return membership

    async def update_membership(self, membership_id: str, update_data: Dict[str, Any]) -> Membership:
        data = {key: value for key, value in update_data.items() if value is not None}
        if not data:
            raise_if_errors({"update": ["At least one field must be provided"]})

        membership = await self.get_membership(membership_id)
        return await self._update(membership, data)

    async def delete_membership(self, membership_id: str) -> bool:
        """Delete a membership, cancelling its live Stripe subscription first"""
        membership = await self.get_membership(membership_id)
        if membership.stripe_subscription_id and membership.subscription_status in (
            SubscriptionStatusEnum.ACTIVE, SubscriptionStatusEnum.PAST_DUE, SubscriptionStatusEnum.UNPAID,
        ):
            await self._require_gateway().cancel_subscription(membership.stripe_subscription_id)
            logger.info(f"Cancelled subscription {membership.stripe_subscription_id} before deletion")

        try:
            deleted = await self.repository.delete_membership(membership_id)
        except Exception as e:
            logger.error(f"Failed to delete membership {membership_id}: {e}")
            raise OperationFailedError("delete_membership", membership_id=membership_id) from e

        logger.info(f"Deleted membership {membership_id}")
        return deleted

    # ====================
    # Stripe Customer & Subscription
    # ====================

    async def create_stripe_customer_and_membership(self, user_id: str, email: str, name: str) -> Membership:
        """Create the Stripe customer of a user and an inactive basic membership"""
        errors = {}
        check_user_id(errors, "user_id", user_id)
        if not isinstance(email, str) or not email.strip():
            errors.setdefault("email", []).append("Email is required")
        if not isinstance(name, str) or not name.strip():
            errors.setdefault("name", []).append("Name is required")
        raise_if_errors(errors)

        if await self.repository.get_membership_by_user_id(user_id):
            raise ConflictError("User already has membership", details={"user_id": user_id})

        customer = await self._require_gateway().create_customer(
            email, name, {"user_id": user_id, "platform": self.config.platform_name}
        )
        logger.info(f"Created Stripe customer {customer['id']} for user {user_id}")

        return await self.create_membership(
            user_id,
            stripe_customer_id=customer["id"],
            plan_type=PlanTypeEnum.BASIC,
            subscription_status=SubscriptionStatusEnum.INACTIVE,
        )

    async def create_subscription(
        self, membership_id: str, price_id: str, plan_type: PlanTypeEnum = PlanTypeEnum.BASIC
    ) -> Membership:
        if not isinstance(price_id, str) or not price_id.strip():
            raise_if_errors({"price_id": ["Price ID is required"]})

        membership = await self.get_membership(membership_id)
        if not membership.stripe_customer_id:
            raise BusinessRuleViolation("No Stripe customer", details={"membership_id": membership_id})
        if membership.stripe_subscription_id:
            raise ConflictError("Subscription already exists", details={"membership_id": membership_id})

        subscription = await self._require_gateway().create_subscription(
            membership.stripe_customer_id,
            price_id,
            {"user_id": membership.user_id, "membership_id": membership_id, "plan_type": PlanTypeEnum(plan_type).value},
        )
        logger.info(f"Created subscription {subscription['id']} for membership {membership_id}")

        return await self._update(membership, {
            "stripe_subscription_id": subscription["id"],
            "plan_type": PlanTypeEnum(plan_type),
            "subscription_status": STRIPE_STATUS_MAP.get(subscription.get("status"), SubscriptionStatusEnum.INACTIVE),
        })

    async def cancel_subscription(self, membership_id: str) -> Membership:
        membership = await self.get_membership(membership_id)
        if not membership.stripe_subscription_id:
            raise BusinessRuleViolation("No subscription to cancel", details={"membership_id": membership_id})

        await self._require_gateway().cancel_subscription(membership.stripe_subscription_id)
        logger.info(f"Cancelled subscription {membership.stripe_subscription_id}")

        return await self._update(membership, {
            "stripe_subscription_id": None,
            "subscription_status": SubscriptionStatusEnum.CANCELLED,
        })

    # ====================
    # Webhooks
    # ====================

    async def handle_webhook(self, payload: bytes, signature: str) -> WebhookResult:
        """Verify a Stripe webhook and process its event"""
        event = self._require_gateway().construct_webhook_event(payload, signature)
        return await self.handle_webhook_event(event)

    async def handle_webhook_event(self, event: Dict[str, Any]) -> WebhookResult:
        """
        Process a verified Stripe event.

        Events handled:
            - customer.subscription.deleted: cancelled, subscription cleared
            - customer.subscription.updated: status mapped from Stripe
            - invoice.payment_succeeded: active, last payment date, plan credits
            - invoice.payment_failed: pastDue
        """
        event_type = event.get("type", "")
        obj = (event.get("data") or {}).get("object") or {}

        try:
            if event_type == "customer.subscription.deleted":
                membership = await self._membership_for(obj.get("id"), self._stripe_id(obj.get("customer")))
                if membership is None:
                    return self._unmatched(event_type)
                membership = await self._update(membership, {
                    "stripe_subscription_id": None,
                    "subscription_status": SubscriptionStatusEnum.CANCELLED,
                }, source_event=event_type)
                return WebhookResult(event_type=event_type, handled=True, membership_id=membership.membership_id)

            if event_type == "customer.subscription.updated":
                membership = await self._membership_for(obj.get("id"), self._stripe_id(obj.get("customer")))
                if membership is None:
                    return self._unmatched(event_type)
                status = STRIPE_STATUS_MAP.get(obj.get("status"), SubscriptionStatusEnum.INACTIVE)
                membership = await self._update(membership, {"subscription_status": status}, source_event=event_type)
                return WebhookResult(event_type=event_type, handled=True, membership_id=membership.membership_id)

            if event_type == "invoice.payment_succeeded":
                return await self._handle_invoice_paid(event_type, obj)

            if event_type == "invoice.payment_failed":
                membership = await self._membership_for(
                    self._stripe_id(obj.get("subscription")), self._stripe_id(obj.get("customer"))
                )
                if membership is None:
                    return self._unmatched(event_type)
                membership = await self._update(
                    membership, {"subscription_status": SubscriptionStatusEnum.PAST_DUE}, source_event=event_type
                )
                return WebhookResult(event_type=event_type, handled=True, membership_id=membership.membership_id)

        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to process webhook {event_type} ({event.get('id')}): {e}")
            raise OperationFailedError("handle_webhook_event", event_type=event_type, event_id=event.get("id")) from e

        logger.info(f"Unhandled webhook event type: {event_type}")
        return WebhookResult(event_type=event_type, handled=False)

    async def _handle_invoice_paid(self, event_type: str, invoice: Dict[str, Any]) -> WebhookResult:
        membership = await self._membership_for(
            self._stripe_id(invoice.get("subscription")), self._stripe_id(invoice.get("customer"))
        )
        if membership is None:
            return self._unmatched(event_type)

        created = invoice.get("created")
        paid_at = datetime.fromtimestamp(created, tz=timezone.utc) if created else datetime.now(timezone.utc)
        membership = await self._update(membership, {
            "last_payment_date": paid_at,
            "subscription_status": SubscriptionStatusEnum.ACTIVE,
        }, source_event=event_type)

        plan = membership.plan_type.value
        credits = self.config.plan_credits.get(plan, 0)
        if credits > 0 and self.credit_service is not None:
            await self.credit_service.grant_subscription_credits(
                membership.user_id, credits, plan, reference_id=invoice.get("id")
            )
        else:
            credits = 0

        return WebhookResult(
            event_type=event_type,
            handled=True,
            membership_id=membership.membership_id,
            credits_granted=credits,
        )

    async def _membership_for(
        self, subscription_id: Optional[str], customer_id: Optional[str]
    ) -> Optional[Membership]:
        membership = None
        if subscription_id:
            membership = await self.repository.get_membership_by_subscription_id(subscription_id)
        if membership is None and customer_id:
            membership = await self.repository.get_membership_by_customer_id(customer_id)
        return membership

    @staticmethod
    def _stripe_id(value: Any) -> Optional[str]:
        """An id field of a webhook object, whether or not Stripe expanded it"""
        if isinstance(value, dict):
            return value.get("id")
        return value

    @staticmethod
    def _unmatched(event_type: str) -> WebhookResult:
        logger.warning(f"No membership matches webhook {event_type}")
        return WebhookResult(event_type=event_type, handled=False)


__all__ = ["MembershipService", "STRIPE_STATUS_MAP"]
