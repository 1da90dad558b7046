"""
Credit Transfer Coordinator

Role-gated peer-to-peer moves of demand credits. Subscription credits are
not transferable. Both balance rows are locked in ascending user_id order so
two opposite transfers between the same users cannot deadlock.
"""

import logging
from typing import Any

from .ledger import (
    CreditLedger,
    check_amount,
    check_description,
    check_user_id,
    raise_if_errors,
)
from .models import TransferResult, UserRole
from .protocols import (
    BusinessRuleViolation,
    InsufficientCreditsError,
    ResourceNotFound,
    TransferLimitExceededError,
)

logger = logging.getLogger(__name__)

TRANSFER_ROLES = {UserRole.MEMBER.value, UserRole.PROFESSIONAL.value, UserRole.ADMIN.value}


class CreditTransferCoordinator:
    """Executes atomic two-party balance moves"""

    def __init__(self, ledger: CreditLedger, member_transfer_limit: int = 50):
        self.ledger = ledger
        self.member_transfer_limit = member_transfer_limit

    def check_transfer_policy(self, acting_role: Any, amount: int) -> None:
        """
        Role policy, checked before any mutation.

        Raises:
            BusinessRuleViolation: If the role may not transfer
            TransferLimitExceededError: If a MEMBER exceeds the per-transfer cap
        """
        role = acting_role.value if isinstance(acting_role, UserRole) else acting_role
        if role not in TRANSFER_ROLES:
            raise BusinessRuleViolation("Invalid user role for credit transfer", details={"role": role})

        if role == UserRole.MEMBER.value and amount > self.member_transfer_limit:
            raise TransferLimitExceededError(
                limit=self.member_transfer_limit,
                requested=amount,
                details=f"Members can only transfer up to {self.member_transfer_limit} credits at a time",
            )

    async def transfer(
        self,
        from_user_id: str,
        to_user_id: str,
        amount: int,
        description: str,
        acting_role: Any,
        conn: Any,
    ) -> TransferResult:
        """
        Move demand credits between two users inside the caller's transaction.

        Args:
            from_user_id: Sender
            to_user_id: Recipient (balance opened if missing)
            amount: Positive number of demand credits
            description: History description
            acting_role: Role of the acting user
            conn: Transaction connection

        Returns:
            TransferResult with both updated balances

        Raises:
            ValidationError: On malformed input
            BusinessRuleViolation: On role, limit, self-transfer or shortfall
            ResourceNotFound: If the sender has no balance
        """
        errors = {}
        check_user_id(errors, "from_user_id", from_user_id)
        check_user_id(errors, "to_user_id", to_user_id)
        check_amount(errors, "amount", amount, positive=True)
        check_description(errors, "description", description)
        raise_if_errors(errors)

        self.check_transfer_policy(acting_role, amount)

        if from_user_id == to_user_id:
            raise BusinessRuleViolation("Invalid transfer", details="Cannot transfer credits to the same user")

        locked = {}
        for user_id in sorted((from_user_id, to_user_id)):
            if user_id == from_user_id:
                locked[user_id] = await self.ledger.lock_balance(user_id, conn)
            else:
                locked[user_id] = await self.ledger.lock_or_open_balance(user_id, conn)

        sender = locked[from_user_id]
        if sender is None:
            raise ResourceNotFound("Credits", from_user_id)
        if sender.amount_demand < amount:
            raise InsufficientCreditsError(
                f"User has {sender.amount_demand} demand credits, but {amount} is required",
                available=sender.amount_demand,
                required=amount,
            )

        from_credits = await self.ledger.apply(
            conn, sender, -amount, 0, f"{description} (transferred to user {to_user_id})"
        )
        to_credits = await self.ledger.apply(
            conn, locked[to_user_id], amount, 0, f"{description} (received from user {from_user_id})"
        )

        logger.info(f"Transferred {amount} credits from {from_user_id} to {to_user_id}")
        return TransferResult(from_credits=from_credits, to_credits=to_credits)


__all__ = ["CreditTransferCoordinator", "TRANSFER_ROLES"]
