"""
Credit Service Event Handlers

Inbound events that move credits without an HTTP call: membership renewals
top up amount_sub, account deletion soft-deletes the balance.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

from ..protocols import CreditServiceError, ResourceNotFound

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None]]


def extract_event_data(event_or_data: Union[Dict[str, Any], Any]) -> Dict[str, Any]:
    """Return the payload of a NATS Event, or the dict itself"""
    if hasattr(event_or_data, 'data'):
        return event_or_data.data
    return event_or_data


def renewal_credits(event_data: Dict[str, Any], plan_credits: Mapping[str, int]) -> int:
    """
    Credits to grant for a renewal.

    An explicit credits_included wins; otherwise the plan's configured
    monthly allowance is used. Unknown plans grant nothing.
    """
    included = event_data.get("credits_included")
    if included is not None:
        try:
            return int(included)
        except (TypeError, ValueError):
            return 0
    plan_type = event_data.get("plan_type") or event_data.get("tier_code")
    return int(plan_credits.get(plan_type, 0)) if plan_type else 0


# ============================================================================
# Event Handlers
# ============================================================================


async def handle_subscription_renewed(
    event_or_data: Union[Dict[str, Any], Any],
    credit_service=None,
    plan_credits: Optional[Mapping[str, int]] = None,
):
    """
    subscription.renewed -> grant_subscription_credits

    Event data:
        - user_id: User ID
        - subscription_id: Stripe subscription ID
        - invoice_id: Paid invoice; the ledger reference that makes redelivery safe
        - plan_type: basic, professional or premium (tier_code accepted)
        - credits_included: Optional override of the plan allowance
    """
    event_data = extract_event_data(event_or_data) or {}
    user_id = event_data.get("user_id")
    if not user_id:
        logger.warning("subscription.renewed event missing user_id")
        return

    plan_type = event_data.get("plan_type") or event_data.get("tier_code") or "basic"
    amount = renewal_credits(event_data, plan_credits or {})
    if amount <= 0:
        logger.info(f"No renewal credits for user {user_id} on plan {plan_type}")
        return
    if credit_service is None:
        return

    reference_id = event_data.get("invoice_id") or getattr(event_or_data, "id", None)
    try:
        await credit_service.grant_subscription_credits(
            user_id=user_id,
            amount=amount,
            plan_type=plan_type,
            reference_id=reference_id,
        )
        logger.info(f"Granted {amount} renewal credits to user {user_id} ({reference_id})")
    except CreditServiceError as e:
        logger.error(f"Rejected renewal credits for user {user_id}: {e}")
    except Exception as e:
        logger.error(f"Failed to grant renewal credits to user {user_id}: {e}")
        if reference_id:
            # Grants are idempotent per reference, so redelivery is safe
            raise


async def handle_user_deleted(event_or_data: Union[Dict[str, Any], Any], credit_service=None):
    """
    user.deleted -> delete_user_credits (soft delete, history retained)

    Event data:
        - user_id: User ID
    """
    event_data = extract_event_data(event_or_data) or {}
    user_id = event_data.get("user_id")
    if not user_id:
        logger.warning("user.deleted event missing user_id")
        return
    if credit_service is None:
        return

    try:
        await credit_service.delete_user_credits(user_id)
        logger.info(f"Soft-deleted credit balance of user {user_id}")
    except ResourceNotFound:
        logger.debug(f"User {user_id} had no credit balance")
    except Exception as e:
        logger.error(f"Failed to delete credit balance of user {user_id}: {e}")


# ============================================================================
# Event Handler Registry
# ============================================================================


def get_event_handlers(
    credit_service=None,
    plan_credits: Optional[Mapping[str, int]] = None,
) -> Dict[str, Handler]:
    """
    Event type -> handler, bound to the service.

    Registered as durable NATS consumers in main.py.
    """
    async def on_renewed(event):
        await handle_subscription_renewed(event, credit_service, plan_credits)

    async def on_user_deleted(event):
        await handle_user_deleted(event, credit_service)

    return {
        "subscription.renewed": on_renewed,
        "user.deleted": on_user_deleted,
    }
