"""
Credit Service Data Models

Dual-bucket credit balances (demand and subscription credits), the immutable
credit history, promo codes with per-user usage records, and memberships
linked to a Stripe customer.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, computed_field


# ====================
# Enumerations
# ====================

class CreditOperationEnum(str, Enum):
    """Direction of a balance change"""
    INCREASE = "increase"
    DECREASE = "decrease"


class CreditTypeEnum(str, Enum):
    """Credit bucket touched by a balance change"""
    DEMAND = "demand"
    SUB = "sub"


class UserRole(str, Enum):
    """Acting user roles relevant to the ledger"""
    ADMIN = "ADMIN"
    PROFESSIONAL = "PROFESSIONAL"
    MEMBER = "MEMBER"
    GUEST = "GUEST"


class SubscriptionStatusEnum(str, Enum):
    """Membership subscription status"""
    ACTIVE = "active"
    INACTIVE = "inactive"
    CANCELLED = "cancelled"
    PAST_DUE = "pastDue"
    UNPAID = "unpaid"


class PlanTypeEnum(str, Enum):
    """Membership plan"""
    BASIC = "basic"
    PREMIUM = "premium"
    PROFESSIONAL = "professional"


# ====================
# Core Data Models
# ====================

class CreditBalance(BaseModel):
    """
    Per-user credit balance.

    amount_demand holds purchased (pay-as-you-go) credits, amount_sub holds
    credits granted by a subscription plan. Both are never negative.
    """
    credits_id: str = Field(..., description="Balance identifier")
    user_id: str = Field(..., min_length=1, description="Owning user")
    amount_demand: int = Field(default=0, ge=0, description="On-demand credits")
    amount_sub: int = Field(default=0, ge=0, description="Subscription credits")
    deleted_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @computed_field
    @property
    def total_credits(self) -> int:
        return self.amount_demand + self.amount_sub


class CreditHistoryEntry(BaseModel):
    """Append-only record of a single bucket change"""
    history_id: str
    user_id: str
    credits_id: str
    amount: int = Field(..., description="Signed change: negative for decrease")
    description: str
    operation: CreditOperationEnum
    type: CreditTypeEnum
    transaction_id: Optional[str] = None
    created_at: Optional[datetime] = None


class PromoCode(BaseModel):
    """Promotional code granting bonus credits on purchase"""
    promo_code_id: str
    code: str
    discount: int = Field(..., ge=0, le=100, description="Bonus percentage")
    allowed_times: int = Field(..., gt=0, description="Total redemption cap")
    amount_available: int = Field(..., ge=0, description="Remaining redemptions")
    expiration_date: datetime
    active: bool = True
    cancelled_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PromoCodeUsage(BaseModel):
    """One successful redemption of a promo code by a user"""
    usage_id: str
    promo_code_id: str
    user_id: str
    transaction_id: Optional[str] = None
    used_at: Optional[datetime] = None


class CreditPack(BaseModel):
    """Purchasable bundle of demand credits at a fixed price"""
    pack_id: str
    type: str = Field(..., description="Catalog name, e.g. starter or premium")
    amount: int = Field(..., gt=0, description="Credits granted per purchase")
    frequency: int = Field(default=1, gt=0, description="Deliveries per purchase")
    price: float = Field(..., gt=0, description="Price in major currency units")
    active: bool = True
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Membership(BaseModel):
    """Membership record linked to a payment-gateway customer"""
    membership_id: str
    user_id: str
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_status: SubscriptionStatusEnum = SubscriptionStatusEnum.INACTIVE
    plan_type: PlanTypeEnum = PlanTypeEnum.BASIC
    active: bool = True
    last_payment_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ====================
# Operation Results
# ====================

class PromoCodeValidation(BaseModel):
    """Outcome of checking a promo code for a user"""
    valid: bool
    reason: Optional[str] = None
    promo_code: Optional[PromoCode] = None


class PromoCodeRedemption(BaseModel):
    """Promo code after a successful use, with the usage row when recorded"""
    promo_code: PromoCode
    usage: Optional[PromoCodeUsage] = None


class PromoCodeTransactionResult(BaseModel):
    """Promo step of a purchase; used is False when the buyer had already redeemed the code"""
    promo_code: PromoCode
    used: bool
    usage: Optional[PromoCodeUsage] = None


class TransferResult(BaseModel):
    """Balances of both parties after a transfer"""
    model_config = ConfigDict(populate_by_name=True)

    from_credits: CreditBalance = Field(..., alias="from")
    to_credits: CreditBalance = Field(..., alias="to")


class PaymentTransactionResult(BaseModel):
    """Outcome of a paid credit purchase"""
    credits: CreditBalance
    payment_intent_id: Optional[str] = None
    promo_code_used: Optional[str] = None
    discount: int = 0
    bonus_amount: int = 0
    final_amount: int
    price: Optional[float] = None


class WebhookResult(BaseModel):
    """Result of processing a gateway webhook event"""
    event_type: str
    handled: bool
    membership_id: Optional[str] = None
    credits_granted: int = 0


# ====================
# Request Models
# ====================
# Field rules live in the services so callers get field -> reasons errors.

class CreateCreditsRequest(BaseModel):
    user_id: str = Field(..., description="User receiving the balance")
    amount_demand: int = Field(default=0, description="Initial on-demand credits")
    amount_sub: int = Field(default=0, description="Initial subscription credits")


class UpdateCreditsRequest(BaseModel):
    amount_demand: Optional[int] = Field(None, description="New on-demand credit amount")
    amount_sub: Optional[int] = Field(None, description="New subscription credit amount")


class AddCreditsRequest(BaseModel):
    amount: int = Field(..., description="Credits to add")
    description: str = Field(..., description="History description")
    promo_code: Optional[str] = Field(None, description="Promo code granting bonus credits")
    transaction_id: Optional[str] = Field(None, description="External correlation id")


class ConsumeCreditsRequest(BaseModel):
    demand_amount: int = Field(default=0, description="On-demand credits to consume")
    sub_amount: int = Field(default=0, description="Subscription credits to consume")
    description: str = Field(..., description="History description")


class ConsumeWithPriorityRequest(BaseModel):
    amount: int = Field(..., description="Total credits to consume, subscription credits first")
    description: str = Field(..., description="History description")


class TransferCreditsRequest(BaseModel):
    from_user_id: str
    to_user_id: str
    amount: int
    description: str


class PurchaseCreditsRequest(BaseModel):
    amount: Optional[int] = Field(None, description="Credits purchased (taken from the pack when pack_id is set)")
    price: Optional[float] = Field(None, description="Charge in major currency units")
    promo_code: Optional[str] = None
    pack_id: Optional[str] = Field(None, description="Credit pack fixing amount and price")
    payment_method_id: Optional[str] = Field(None, description="Stripe payment method charged for the price")


class CreateCreditPackRequest(BaseModel):
    type: str
    amount: int
    price: float
    frequency: int = 1
    active: bool = True


class UpdateCreditPackRequest(BaseModel):
    type: Optional[str] = None
    amount: Optional[int] = None
    price: Optional[float] = None
    frequency: Optional[int] = None
    active: Optional[bool] = None


class CreatePromoCodeRequest(BaseModel):
    code: str
    discount: int
    allowed_times: int
    amount_available: int
    expiration_date: datetime
    active: bool = True


class UpdatePromoCodeRequest(BaseModel):
    code: Optional[str] = None
    discount: Optional[int] = None
    allowed_times: Optional[int] = None
    amount_available: Optional[int] = None
    expiration_date: Optional[datetime] = None
    active: Optional[bool] = None


class UsePromoCodeRequest(BaseModel):
    code: str
    user_id: str
    transaction_id: Optional[str] = None


class LegacyUsePromoCodeRequest(BaseModel):
    code: str


class CreateMembershipRequest(BaseModel):
    user_id: str
    stripe_customer_id: Optional[str] = None
    plan_type: PlanTypeEnum = PlanTypeEnum.BASIC
    subscription_status: SubscriptionStatusEnum = SubscriptionStatusEnum.INACTIVE


class UpdateMembershipRequest(BaseModel):
    plan_type: Optional[PlanTypeEnum] = None
    subscription_status: Optional[SubscriptionStatusEnum] = None
    active: Optional[bool] = None


class CreateStripeCustomerRequest(BaseModel):
    user_id: str
    email: str
    name: str


class CreateSubscriptionRequest(BaseModel):
    price_id: str
    plan_type: PlanTypeEnum = PlanTypeEnum.BASIC


# ====================
# Response Models
# ====================

class CreditHistoryResponse(BaseModel):
    user_id: str
    entries: List[CreditHistoryEntry]
    limit: int
    offset: int


class HealthCheckResponse(BaseModel):
    status: str
    service: str
    port: int
    version: str
    timestamp: str
    dependencies: Dict[str, Any] = Field(default_factory=dict)
