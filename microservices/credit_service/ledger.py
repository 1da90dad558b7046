"""
Credit Ledger

Balance mutation primitives shared by consumption, purchases, transfers and
subscription grants. Every mutation goes through ``CreditLedger.apply`` so a
balance never drops below zero and each bucket touched gets exactly one
history entry. Callers hold the balance row lock (``lock_balance``) for the
whole read-modify-write inside a repository transaction.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from .models import CreditBalance, CreditOperationEnum, CreditTypeEnum
from .protocols import (
    CreditRepositoryProtocol,
    InsufficientCreditsError,
    ValidationError,
)

logger = logging.getLogger(__name__)

MAX_DESCRIPTION_LENGTH = 255


# ====================
# Input Checks
# ====================


def is_integer(value: Any) -> bool:
    """True for ints, rejecting bools (which are ints in Python)"""
    return isinstance(value, int) and not isinstance(value, bool)


def check_user_id(errors: Dict[str, List[str]], field: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        errors.setdefault(field, []).append("User ID is required and must be a string")


def check_amount(errors: Dict[str, List[str]], field: str, value: Any, positive: bool = False) -> None:
    if not is_integer(value):
        errors.setdefault(field, []).append("Amount must be an integer")
    elif value < 0:
        errors.setdefault(field, []).append("Amount must be non-negative")
    elif positive and value == 0:
        errors.setdefault(field, []).append("Amount must be greater than zero")


def check_description(errors: Dict[str, List[str]], field: str, value: Any) -> None:
    if not isinstance(value, str) or not value.strip():
        errors.setdefault(field, []).append("Description is required")
    elif len(value) > MAX_DESCRIPTION_LENGTH:
        errors.setdefault(field, []).append(
            f"Description must be at most {MAX_DESCRIPTION_LENGTH} characters"
        )


def raise_if_errors(errors: Dict[str, List[str]]) -> None:
    if errors:
        raise ValidationError(errors)


# ====================
# Pure Ledger Rules
# ====================


def plan_priority_consumption(amount_sub: int, amount_demand: int, total: int) -> Tuple[int, int]:
    """
    Split ``total`` across the buckets, subscription credits first.

    Returns:
        (taken from amount_sub, taken from amount_demand)

    Raises:
        InsufficientCreditsError: If both buckets together hold less than total
    """
    available = amount_sub + amount_demand
    if available < total:
        raise InsufficientCreditsError(
            f"User has {available} total credits, but {total} is required",
            available=available,
            required=total,
        )
    from_sub = min(total, amount_sub)
    return from_sub, total - from_sub


def compute_bonus(amount: int, discount: int) -> int:
    """Bonus credits granted by a promo code: floor(amount * discount / 100)"""
    return (amount * discount) // 100


def cache_key(user_id: str) -> str:
    return f"credits:user:{user_id}"


def generation_key(user_id: str) -> str:
    """Invalidation counter; a cached balance is only valid for the generation it was read under"""
    return f"credits:user:{user_id}:gen"


# ====================
# Ledger
# ====================


class CreditLedger:
    """Locked read-modify-write of balances with history"""

    def __init__(self, repository: CreditRepositoryProtocol):
        self.repository = repository

    async def lock_balance(self, user_id: str, conn: Any) -> Optional[CreditBalance]:
        """Lock and return the live balance of a user (None if missing)"""
        return await self.repository.get_credits_by_user_id(user_id, conn=conn, for_update=True)

    async def lock_or_open_balance(self, user_id: str, conn: Any) -> CreditBalance:
        """Lock the balance of a user, creating an empty one on first grant"""
        credits = await self.lock_balance(user_id, conn)
        if credits is None:
            credits = await self.repository.create_credits(user_id, 0, 0, conn=conn)
            logger.info(f"Opened credit balance for user {user_id}")
        return credits

    async def apply(
        self,
        conn: Any,
        credits: CreditBalance,
        demand_delta: int,
        sub_delta: int,
        description: str,
        transaction_id: Optional[str] = None,
    ) -> CreditBalance:
        """
        Apply signed deltas to a locked balance and append history.

        Args:
            conn: Transaction connection holding the row lock
            credits: Balance read under that lock
            demand_delta: Change to amount_demand (negative to consume)
            sub_delta: Change to amount_sub (negative to consume)
            description: History description
            transaction_id: Optional external correlation id

        Returns:
            Updated balance

        Raises:
            InsufficientCreditsError: If a bucket would go negative
        """
        new_demand = credits.amount_demand + demand_delta
        new_sub = credits.amount_sub + sub_delta
        if new_demand < 0 or new_sub < 0:
            raise InsufficientCreditsError(
                f"User has {credits.amount_demand} demand credits and "
                f"{credits.amount_sub} subscription credits",
                available=credits.total_credits,
                required=-(min(demand_delta, 0) + min(sub_delta, 0)),
            )

        updated = await self.repository.update_credits_amounts(
            credits.credits_id, new_demand, new_sub, conn=conn
        )

        for delta, credit_type in ((demand_delta, CreditTypeEnum.DEMAND), (sub_delta, CreditTypeEnum.SUB)):
            if delta == 0:
                continue
            await self.repository.create_history_entry(
                {
                    "user_id": credits.user_id,
                    "credits_id": credits.credits_id,
                    "amount": delta,
                    "description": description,
                    "operation": (
                        CreditOperationEnum.INCREASE.value if delta > 0 else CreditOperationEnum.DECREASE.value
                    ),
                    "type": credit_type.value,
                    "transaction_id": transaction_id,
                },
                conn=conn,
            )

        logger.debug(
            f"Ledger {credits.user_id}: demand {credits.amount_demand}->{new_demand}, "
            f"sub {credits.amount_sub}->{new_sub}"
        )
        return updated


__all__ = [
    "CreditLedger",
    "plan_priority_consumption",
    "compute_bonus",
    "cache_key",
    "generation_key",
    "is_integer",
    "check_user_id",
    "check_amount",
    "check_description",
    "raise_if_errors",
]
