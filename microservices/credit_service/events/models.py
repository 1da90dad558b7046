"""
Credit Service Event Models

Event data models for the credit ledger, promo codes and memberships.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Event Type Definitions (Service-Specific)
# =============================================================================

class CreditEventType(str, Enum):
    """
    Events published by credit_service.

    Streams: credit-stream, promo-code-stream, membership-stream
    """
    CREDIT_ADDED = "credit.added"
    CREDIT_CONSUMED = "credit.consumed"
    CREDIT_TRANSFERRED = "credit.transferred"
    CREDIT_SUBSCRIPTION_GRANTED = "credit.subscription_granted"
    PROMO_CODE_USED = "promo_code.used"
    PROMO_CODE_CANCELLED = "promo_code.cancelled"
    MEMBERSHIP_STATUS_CHANGED = "membership.status_changed"


class CreditSubscribedEventType(str, Enum):
    """Events that credit_service subscribes to from other services."""
    SUBSCRIPTION_RENEWED = "subscription.renewed"
    USER_DELETED = "user.deleted"


# ============================================================================
# Credit Ledger Event Models
# ============================================================================


class CreditAddedEventData(BaseModel):
    """
    Event: credit.added
    Triggered when demand credits are added (purchase or manual grant)
    """

    user_id: str = Field(..., description="User receiving credits")
    credits_id: str = Field(..., description="Balance identifier")
    amount: int = Field(..., description="Credits added, bonus included")
    bonus_amount: int = Field(default=0, description="Bonus part granted by a promo code")
    promo_code: Optional[str] = Field(None, description="Promo code applied")
    transaction_id: Optional[str] = Field(None, description="Payment intent or correlation id")
    amount_demand: int = Field(..., description="Demand credits after the change")
    amount_sub: int = Field(..., description="Subscription credits after the change")
    timestamp: datetime = Field(default_factory=_utcnow)


class CreditConsumedEventData(BaseModel):
    """
    Event: credit.consumed
    Triggered when credits are consumed from one or both buckets
    """

    user_id: str
    credits_id: str
    demand_consumed: int = 0
    sub_consumed: int = 0
    description: str
    amount_demand: int
    amount_sub: int
    timestamp: datetime = Field(default_factory=_utcnow)


class CreditTransferredEventData(BaseModel):
    """
    Event: credit.transferred
    Triggered when demand credits move between two users
    """

    from_user_id: str
    to_user_id: str
    amount: int
    acting_role: str
    description: str
    timestamp: datetime = Field(default_factory=_utcnow)


class SubscriptionCreditsGrantedEventData(BaseModel):
    """
    Event: credit.subscription_granted
    Triggered when a plan's monthly credits are added to amount_sub
    """

    user_id: str
    credits_id: str
    amount: int
    plan_type: str
    reference_id: Optional[str] = None
    amount_sub: int
    timestamp: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Promo Code Event Models
# ============================================================================


class PromoCodeUsedEventData(BaseModel):
    """Event: promo_code.used"""

    promo_code_id: str
    code: str
    user_id: Optional[str] = None
    transaction_id: Optional[str] = None
    amount_available: int
    timestamp: datetime = Field(default_factory=_utcnow)


class PromoCodeCancelledEventData(BaseModel):
    """Event: promo_code.cancelled"""

    promo_code_id: str
    code: str
    cancelled_at: datetime
    timestamp: datetime = Field(default_factory=_utcnow)


# ============================================================================
# Membership Event Models
# ============================================================================


class MembershipStatusChangedEventData(BaseModel):
    """Event: membership.status_changed"""

    membership_id: str
    user_id: str
    previous_status: Optional[str] = None
    subscription_status: str
    source_event: Optional[str] = Field(None, description="Gateway webhook that caused the change")
    timestamp: datetime = Field(default_factory=_utcnow)
