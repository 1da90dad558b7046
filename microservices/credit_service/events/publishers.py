"""
Credit Service Event Publishers

Publish audit events for ledger, promo code and membership changes.
Publishing happens after commit and never fails the operation that
triggered it: errors are logged and swallowed here.
"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from core.nats_client import Event, EventType, ServiceSource

from ..models import CreditBalance, Membership, PromoCode, PromoCodeUsage
from .models import (
    CreditAddedEventData,
    CreditConsumedEventData,
    CreditTransferredEventData,
    MembershipStatusChangedEventData,
    PromoCodeCancelledEventData,
    PromoCodeUsedEventData,
    SubscriptionCreditsGrantedEventData,
)

logger = logging.getLogger(__name__)


async def _publish(event_bus, event_type: EventType, event_data: BaseModel) -> bool:
    if event_bus is None:
        return False
    try:
        event = Event(
            event_type=event_type,
            source=ServiceSource.CREDIT_SERVICE,
            data=event_data.model_dump(mode='json'),
        )
        published = await event_bus.publish_event(event)
        if published is not False:
            logger.info(f"Published {event_type.value}")
        return bool(published)

    except Exception as e:
        logger.error(f"Failed to publish {event_type.value}: {e}")
        return False


# ============================================================================
# Credit Ledger Event Publishers
# ============================================================================


async def publish_credit_added(
    event_bus,
    credits: CreditBalance,
    amount: int,
    bonus_amount: int = 0,
    promo_code: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> bool:
    """
    Publish credit.added event

    Args:
        event_bus: NATS event bus instance
        credits: Balance after the change
        amount: Credits added, bonus included
        bonus_amount: Part of amount granted by a promo code
        promo_code: Promo code applied (optional)
        transaction_id: Payment intent or correlation id (optional)
    """
    return await _publish(
        event_bus,
        EventType.CREDIT_ADDED,
        CreditAddedEventData(
            user_id=credits.user_id,
            credits_id=credits.credits_id,
            amount=amount,
            bonus_amount=bonus_amount,
            promo_code=promo_code,
            transaction_id=transaction_id,
            amount_demand=credits.amount_demand,
            amount_sub=credits.amount_sub,
        ),
    )


async def publish_credit_consumed(
    event_bus,
    credits: CreditBalance,
    demand_consumed: int,
    sub_consumed: int,
    description: str,
) -> bool:
    """Publish credit.consumed event"""
    return await _publish(
        event_bus,
        EventType.CREDIT_CONSUMED,
        CreditConsumedEventData(
            user_id=credits.user_id,
            credits_id=credits.credits_id,
            demand_consumed=demand_consumed,
            sub_consumed=sub_consumed,
            description=description,
            amount_demand=credits.amount_demand,
            amount_sub=credits.amount_sub,
        ),
    )


async def publish_credit_transferred(
    event_bus,
    from_user_id: str,
    to_user_id: str,
    amount: int,
    acting_role: str,
    description: str,
) -> bool:
    """Publish credit.transferred event"""
    return await _publish(
        event_bus,
        EventType.CREDIT_TRANSFERRED,
        CreditTransferredEventData(
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            amount=amount,
            acting_role=acting_role,
            description=description,
        ),
    )


async def publish_subscription_credits_granted(
    event_bus,
    credits: CreditBalance,
    amount: int,
    plan_type: str,
    reference_id: Optional[str] = None,
) -> bool:
    """Publish credit.subscription_granted event"""
    return await _publish(
        event_bus,
        EventType.CREDIT_SUBSCRIPTION_GRANTED,
        SubscriptionCreditsGrantedEventData(
            user_id=credits.user_id,
            credits_id=credits.credits_id,
            amount=amount,
            plan_type=plan_type,
            reference_id=reference_id,
            amount_sub=credits.amount_sub,
        ),
    )


# ============================================================================
# Promo Code Event Publishers
# ============================================================================


async def publish_promo_code_used(
    event_bus,
    promo_code: PromoCode,
    usage: Optional[PromoCodeUsage] = None,
) -> bool:
    """Publish promo_code.used event"""
    return await _publish(
        event_bus,
        EventType.PROMO_CODE_USED,
        PromoCodeUsedEventData(
            promo_code_id=promo_code.promo_code_id,
            code=promo_code.code,
            user_id=usage.user_id if usage else None,
            transaction_id=usage.transaction_id if usage else None,
            amount_available=promo_code.amount_available,
        ),
    )


async def publish_promo_code_cancelled(event_bus, promo_code: PromoCode, cancelled_at: datetime) -> bool:
    """Publish promo_code.cancelled event"""
    return await _publish(
        event_bus,
        EventType.PROMO_CODE_CANCELLED,
        PromoCodeCancelledEventData(
            promo_code_id=promo_code.promo_code_id,
            code=promo_code.code,
            cancelled_at=cancelled_at,
        ),
    )


# ============================================================================
# Membership Event Publishers
# ============================================================================


async def publish_membership_status_changed(
    event_bus,
    membership: Membership,
    previous_status: Optional[str],
    source_event: Optional[str] = None,
) -> bool:
    """Publish membership.status_changed event"""
    return await _publish(
        event_bus,
        EventType.MEMBERSHIP_STATUS_CHANGED,
        MembershipStatusChangedEventData(
            membership_id=membership.membership_id,
            user_id=membership.user_id,
            previous_status=previous_status,
            subscription_status=membership.subscription_status.value,
            source_event=source_event,
        ),
    )
