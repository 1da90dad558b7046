"""
Credit Service Event Package

Event-driven architecture for credit service:
- Publishing: Ledger, promo code and membership audit events
- Subscription: Renewals granting monthly credits, account deletion
"""

from .models import (
    CreditEventType,
    CreditSubscribedEventType,
    CreditAddedEventData,
    CreditConsumedEventData,
    CreditTransferredEventData,
    SubscriptionCreditsGrantedEventData,
    PromoCodeUsedEventData,
    PromoCodeCancelledEventData,
    MembershipStatusChangedEventData,
)

from .publishers import (
    publish_credit_added,
    publish_credit_consumed,
    publish_credit_transferred,
    publish_subscription_credits_granted,
    publish_promo_code_used,
    publish_promo_code_cancelled,
    publish_membership_status_changed,
)

from .handlers import get_event_handlers

__all__ = [
    # Event types
    "CreditEventType",
    "CreditSubscribedEventType",
    # Event models
    "CreditAddedEventData",
    "CreditConsumedEventData",
    "CreditTransferredEventData",
    "SubscriptionCreditsGrantedEventData",
    "PromoCodeUsedEventData",
    "PromoCodeCancelledEventData",
    "MembershipStatusChangedEventData",
    # Publishers
    "publish_credit_added",
    "publish_credit_consumed",
    "publish_credit_transferred",
    "publish_subscription_credits_granted",
    "publish_promo_code_used",
    "publish_promo_code_cancelled",
    "publish_membership_status_changed",
    # Handlers
    "get_event_handlers",
]
