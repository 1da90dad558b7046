"""
Transaction Service - Orchestrator

Runs multi-step ledger operations as one all-or-nothing unit:

Payment transaction:
1. Redeem the promo code (legacy messages, usage row recorded)
2. Confirm the charge with the payment gateway (bounded timeout)
3. Add amount + bonus demand credits

Any failure rolls the database transaction back, which reverts the promo
decrement and its usage row. If the gateway had already confirmed the
charge, the payment is voided as a compensating action. A gateway call cut
off by the timeout keeps running in the background; if it later returns a
charge, that charge is voided too.
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional, Set

from .ledger import (
    CreditLedger,
    check_amount,
    check_description,
    check_user_id,
    compute_bonus,
    raise_if_errors,
)
from .models import (
    PaymentTransactionResult,
    PromoCodeRedemption,
    PromoCodeTransactionResult,
    TransferResult,
)
from .promo_code_service import PromoCodeService
from .protocols import (
    CreditRepositoryProtocol,
    CreditServiceError,
    ExternalServiceError,
    MembershipRepositoryProtocol,
    OperationFailedError,
    PaymentGatewayProtocol,
)
from .transfer_coordinator import CreditTransferCoordinator

logger = logging.getLogger(__name__)


class TransactionService:
    """Transactional envelope shared by payments, promo redemptions and transfers"""

    def __init__(
        self,
        credit_repository: CreditRepositoryProtocol,
        ledger: CreditLedger,
        promo_code_service: PromoCodeService,
        transfer_coordinator: CreditTransferCoordinator,
        payment_gateway: Optional[PaymentGatewayProtocol] = None,
        gateway_timeout_seconds: float = 15.0,
        currency: str = "gbp",
        membership_repository: Optional[MembershipRepositoryProtocol] = None,
    ):
        self.credit_repository = credit_repository
        self.ledger = ledger
        self.promo_code_service = promo_code_service
        self.transfer_coordinator = transfer_coordinator
        self.payment_gateway = payment_gateway
        self.gateway_timeout_seconds = gateway_timeout_seconds
        self.currency = currency
        self.membership_repository = membership_repository
        # Voids of charges that landed after their call timed out
        self.pending_compensations: Set[asyncio.Task] = set()

    @asynccontextmanager
    async def _envelope(self) -> AsyncIterator[Any]:
        async with self.credit_repository.transaction() as conn:
            yield conn

    # ====================
    # Payment Gateway
    # ====================

    async def _customer_for(self, user_id: str) -> Optional[str]:
        """Stripe customer of the buyer's membership, if they have one"""
        if self.membership_repository is None:
            return None
        try:
            membership = await self.membership_repository.get_membership_by_user_id(user_id)
        except Exception as e:
            logger.error(f"Failed to look up membership of user {user_id}: {e}")
            raise OperationFailedError("execute_payment_transaction", user_id=user_id) from e
        return membership.stripe_customer_id if membership else None

    async def _confirm_payment(
        self,
        price: float,
        metadata: Dict[str, Any],
        payment_method: str,
        customer: Optional[str],
        transaction_id: str,
    ) -> str:
        if self.payment_gateway is None:
            raise ExternalServiceError("Payment", "Payment gateway is not configured")

        call = asyncio.ensure_future(
            self.payment_gateway.confirm_payment(
                price,
                metadata,
                payment_method=payment_method,
                customer=customer,
                idempotency_key=transaction_id,
            )
        )
        try:
            payment = await asyncio.wait_for(asyncio.shield(call), timeout=self.gateway_timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error(
                f"Payment confirmation timed out after {self.gateway_timeout_seconds}s "
                f"(transaction {transaction_id})"
            )
            self._void_when_settled(call, transaction_id)
            raise ExternalServiceError("Payment", "Payment confirmation timed out") from e
        except asyncio.CancelledError:
            self._void_when_settled(call, transaction_id)
            raise
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Payment confirmation failed (transaction {transaction_id}): {e}")
            raise ExternalServiceError("Payment", "Payment confirmation failed") from e

        payment_intent_id = payment.get("payment_intent_id") if payment else None
        if not payment_intent_id:
            raise ExternalServiceError("Payment", "Payment gateway returned no payment intent")
        return payment_intent_id

    def _void_when_settled(self, call: "asyncio.Future", transaction_id: str) -> None:
        """Void whatever charge the abandoned gateway call ends up making"""

        async def void():
            try:
                payment = await call
            except Exception as e:
                logger.info(f"Timed-out payment {transaction_id} did not go through: {e}")
                return
            payment_intent_id = payment.get("payment_intent_id") if payment else None
            if payment_intent_id:
                logger.warning(f"Payment {payment_intent_id} of timed-out transaction {transaction_id} landed late")
                await self._compensate_payment(payment_intent_id)

        task = asyncio.ensure_future(void())
        self.pending_compensations.add(task)
        task.add_done_callback(self.pending_compensations.discard)

    async def _compensate_payment(self, payment_intent_id: str) -> None:
        """Best-effort void of a charge whose ledger write did not commit"""
        try:
            await self.payment_gateway.cancel_payment(payment_intent_id)
            logger.warning(f"Voided payment {payment_intent_id} after failed transaction")
        except Exception as e:
            logger.error(f"Failed to void payment {payment_intent_id}, manual refund needed: {e}")

    # ====================
    # Orchestrated Transactions
    # ====================

    async def execute_payment_transaction(
        self,
        user_id: str,
        amount: int,
        description: str,
        promo_code: Optional[str] = None,
        price: Optional[float] = None,
        payment_method_id: Optional[str] = None,
    ) -> PaymentTransactionResult:
        """
        Purchase demand credits, optionally with a promo code bonus.

        Args:
            user_id: Buyer
            amount: Credits purchased (before bonus)
            description: History description
            promo_code: Code granting floor(amount * discount / 100) bonus credits
            price: Undiscounted charge; the gateway is skipped when absent or zero
            payment_method_id: Stripe payment method charged; required with a price.
                The buyer's Stripe customer is taken from their membership.

        Returns:
            PaymentTransactionResult

        Raises:
            ValidationError: On malformed input
            LegacyPromoCodeError: If the promo code is missing or unavailable
            ExternalServiceError: If the gateway fails or times out
            OperationFailedError: On unexpected store failures
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        check_amount(errors, "amount", amount, positive=True)
        check_description(errors, "description", description)
        if price is not None and (isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0):
            errors.setdefault("price", []).append("Price must be a non-negative number")
        elif price and (not isinstance(payment_method_id, str) or not payment_method_id.strip()):
            errors.setdefault("payment_method_id", []).append("Payment method is required when a price is charged")
        raise_if_errors(errors)

        customer_id = await self._customer_for(user_id) if price else None
        transaction_id = f"txn_{uuid.uuid4().hex[:20]}"
        payment_intent_id = None
        redemption = None
        discount = 0
        bonus = 0

        try:
            async with self._envelope() as conn:
                if promo_code:
                    redemption = await self.promo_code_service.redeem_legacy_in_transaction(
                        promo_code, conn, user_id=user_id, transaction_id=transaction_id
                    )
                    discount = redemption.promo_code.discount
                    bonus = compute_bonus(amount, discount)
                final_amount = amount + bonus

                if price:
                    payment_intent_id = await self._confirm_payment(
                        price,
                        {
                            "user_id": user_id,
                            "transaction_id": transaction_id,
                            "credits": final_amount,
                            "promo_code": promo_code or "",
                            "currency": self.currency,
                        },
                        payment_method=payment_method_id,
                        customer=customer_id,
                        transaction_id=transaction_id,
                    )

                history_description = description
                if redemption:
                    history_description = (
                        f"{description} (with {discount}% bonus from promo code {promo_code})"
                    )
                credits = await self.ledger.lock_or_open_balance(user_id, conn)
                credits = await self.ledger.apply(
                    conn,
                    credits,
                    final_amount,
                    0,
                    history_description,
                    transaction_id=payment_intent_id or transaction_id,
                )

        except CreditServiceError:
            if payment_intent_id:
                await self._compensate_payment(payment_intent_id)
            raise
        except Exception as e:
            if payment_intent_id:
                await self._compensate_payment(payment_intent_id)
            logger.error(f"Payment transaction {transaction_id} failed for user {user_id}: {e}")
            raise OperationFailedError(
                "execute_payment_transaction",
                user_id=user_id,
                transaction_id=transaction_id,
                payment_intent_id=payment_intent_id,
            ) from e

        if redemption:
            await self.promo_code_service.publish_redemption(redemption)

        logger.info(
            f"Payment transaction {transaction_id}: user {user_id} +{final_amount} credits "
            f"(bonus {bonus}, payment {payment_intent_id})"
        )
        return PaymentTransactionResult(
            credits=credits,
            payment_intent_id=payment_intent_id,
            promo_code_used=promo_code if redemption else None,
            discount=discount,
            bonus_amount=bonus,
            final_amount=final_amount,
            price=price,
        )

    async def execute_promo_code_transaction(
        self, promo_code: str, user_id: str, transaction_id: Optional[str] = None
    ) -> PromoCodeTransactionResult:
        """
        Redeem a promo code for a user in its own transaction.

        A code the user already redeemed is returned with ``used=False`` and
        nothing is consumed, so a retried purchase step is harmless.

        Raises:
            ValidationError: If code or user_id is missing
            LegacyPromoCodeError: If the code is missing or unavailable
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        if not isinstance(promo_code, str) or not promo_code.strip():
            errors.setdefault("promo_code", []).append("Promo code is required")
        raise_if_errors(errors)

        try:
            async with self._envelope() as conn:
                result = await self.promo_code_service.redeem_once_in_transaction(
                    promo_code, user_id, conn, transaction_id=transaction_id
                )
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Promo code transaction {promo_code} failed for user {user_id}: {e}")
            raise OperationFailedError(
                "execute_promo_code_transaction", promo_code=promo_code, user_id=user_id
            ) from e

        if result.used:
            await self.promo_code_service.publish_redemption(
                PromoCodeRedemption(promo_code=result.promo_code, usage=result.usage)
            )
        return result

    async def execute_credits_transfer_transaction(
        self,
        from_user_id: str,
        to_user_id: str,
        amount: int,
        description: str,
        acting_role: Any,
    ) -> TransferResult:
        """Run a transfer inside the same envelope as payment transactions"""
        try:
            async with self._envelope() as conn:
                return await self.transfer_coordinator.transfer(
                    from_user_id, to_user_id, amount, description, acting_role, conn
                )
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Transfer {from_user_id} -> {to_user_id} failed: {e}")
            raise OperationFailedError(
                "execute_credits_transfer_transaction",
                from_user_id=from_user_id,
                to_user_id=to_user_id,
            ) from e


__all__ = ["TransactionService"]
