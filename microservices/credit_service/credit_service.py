"""
Credit Service - Business Logic Layer

Dual-bucket credit ledger:
- amount_demand: purchased (pay-as-you-go) credits
- amount_sub: credits granted by a subscription plan

Every mutation runs inside a repository transaction holding the balance row
lock, appends one history entry per bucket touched, and is followed by a
best-effort cache invalidation and an audit event after commit.
"""

import logging
from typing import Any, Dict, Optional

from core.config import ServiceConfig

from .credit_pack_service import CreditPackService
from .events.publishers import (
    publish_credit_added,
    publish_credit_consumed,
    publish_credit_transferred,
    publish_subscription_credits_granted,
)
from .ledger import (
    CreditLedger,
    cache_key,
    check_amount,
    check_description,
    check_user_id,
    compute_bonus,
    generation_key,
    plan_priority_consumption,
    raise_if_errors,
)
from .models import (
    CreditBalance,
    CreditHistoryResponse,
    PaymentTransactionResult,
    TransferResult,
    UserRole,
)
from .promo_code_service import PromoCodeService
from .protocols import (
    BusinessRuleViolation,
    CacheProtocol,
    ConflictError,
    CreditRepositoryProtocol,
    CreditServiceError,
    EventBusProtocol,
    OperationFailedError,
    ResourceNotFound,
)
from .transaction_service import TransactionService

logger = logging.getLogger(__name__)

PURCHASE_ROLES = {UserRole.MEMBER.value, UserRole.PROFESSIONAL.value, UserRole.ADMIN.value}

# Cache generations outlive the balances cached under them
GENERATION_TTL_FACTOR = 10


class CreditService:
    """
    Credit Service - Core business logic

    Handles:
    - Balance reads (cached) and admin create/update/delete
    - Consumption, by bucket or subscription-credits-first
    - Credit grants, paid purchases and subscription grants
    - Transfers through the transaction orchestrator
    """

    def __init__(
        self,
        repository: CreditRepositoryProtocol,
        ledger: CreditLedger,
        promo_code_service: PromoCodeService,
        transaction_service: TransactionService,
        cache: Optional[CacheProtocol] = None,
        event_bus: Optional[EventBusProtocol] = None,
        config: Optional[ServiceConfig] = None,
        credit_pack_service: Optional[CreditPackService] = None,
    ):
        """
        Initialize credit service with dependencies.

        Args:
            repository: Credit repository (Ledger Store)
            ledger: Locked balance mutation primitives
            promo_code_service: Promo code registry
            transaction_service: Orchestrator for payments and transfers
            cache: Balance cache (optional)
            event_bus: Event bus for publishing events (optional)
            config: Service settings
            credit_pack_service: Pack catalog for pack purchases (optional)
        """
        self.repository = repository
        self.ledger = ledger
        self.promo_code_service = promo_code_service
        self.transaction_service = transaction_service
        self.cache = cache
        self.event_bus = event_bus
        self.config = config or ServiceConfig()
        self.credit_pack_service = credit_pack_service

    # ====================
    # Cache
    # ====================

    async def _invalidate(self, *user_ids: str) -> None:
        """
        Bump each user's cache generation, then drop the cached balance.

        A read that loaded the row before the commit stores it under the old
        generation, so it is never served.
        """
        if self.cache is None:
            return
        try:
            for user_id in user_ids:
                await self.cache.incr(
                    generation_key(user_id), self.config.cache_ttl_seconds * GENERATION_TTL_FACTOR
                )
            await self.cache.delete(*[cache_key(user_id) for user_id in user_ids])
        except Exception as e:
            logger.warning(f"Failed to invalidate credit cache for {user_ids}: {e}")

    async def _require_balance(self, user_id: str, conn: Any) -> CreditBalance:
        credits = await self.ledger.lock_balance(user_id, conn)
        if credits is None:
            raise ResourceNotFound("Credits", user_id)
        return credits

    # ====================
    # Balance Queries
    # ====================

    async def get_user_credits(self, user_id: str) -> CreditBalance:
        """
        Get a user's balance, served from cache when present.

        Raises:
            ResourceNotFound: If the user has no balance
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        raise_if_errors(errors)

        key = cache_key(user_id)
        generation = None
        if self.cache is not None:
            # Read before the row, so a concurrent write always moves it on
            generation = await self.cache.get_json(generation_key(user_id))
            cached = await self.cache.get_json(key)
            if isinstance(cached, dict) and "credits" in cached and cached.get("generation") == generation:
                return CreditBalance.model_validate(cached["credits"])

        try:
            credits = await self.repository.get_credits_by_user_id(user_id)
        except Exception as e:
            logger.error(f"Failed to get credits for user {user_id}: {e}")
            raise OperationFailedError("get_user_credits", user_id=user_id) from e
        if credits is None:
            raise ResourceNotFound("Credits", user_id)

        if self.cache is not None:
            await self.cache.set_json(
                key,
                {"generation": generation, "credits": credits.model_dump(mode="json")},
                self.config.cache_ttl_seconds,
            )
        return credits

    async def get_user_credits_history(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> CreditHistoryResponse:
        """Get a user's credit history, newest first"""
        errors = {}
        check_user_id(errors, "user_id", user_id)
        if not isinstance(limit, int) or not 1 <= limit <= 100:
            errors.setdefault("limit", []).append("Limit must be between 1 and 100")
        if not isinstance(offset, int) or offset < 0:
            errors.setdefault("offset", []).append("Offset must be non-negative")
        raise_if_errors(errors)

        try:
            entries = await self.repository.get_history_by_user_id(user_id, limit=limit, offset=offset)
        except Exception as e:
            logger.error(f"Failed to get credit history for user {user_id}: {e}")
            raise OperationFailedError("get_user_credits_history", user_id=user_id) from e

        return CreditHistoryResponse(user_id=user_id, entries=entries, limit=limit, offset=offset)

    # ====================
    # Balance Management
    # ====================

    async def create_user_credits(
        self, user_id: str, amount_demand: int = 0, amount_sub: int = 0
    ) -> CreditBalance:
        """
        Create a balance; initial amounts are recorded as history.

        Raises:
            ConflictError: If the user already has a live balance
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        check_amount(errors, "amount_demand", amount_demand)
        check_amount(errors, "amount_sub", amount_sub)
        raise_if_errors(errors)

        try:
            async with self.repository.transaction() as conn:
                if await self.ledger.lock_balance(user_id, conn):
                    raise ConflictError("User already has credits", details={"user_id": user_id})
                credits = await self.repository.create_credits(user_id, 0, 0, conn=conn)
                if amount_demand or amount_sub:
                    credits = await self.ledger.apply(conn, credits, amount_demand, amount_sub, "Initial credits")
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to create credits for user {user_id}: {e}")
            raise OperationFailedError("create_user_credits", user_id=user_id) from e

        logger.info(f"Created credits {credits.credits_id} for user {user_id}")
        await self._invalidate(user_id)
        return credits

    async def update_user_credits(
        self,
        user_id: str,
        amount_demand: Optional[int] = None,
        amount_sub: Optional[int] = None,
    ) -> CreditBalance:
        """Set bucket amounts; each changed bucket is recorded as history"""
        errors = {}
        check_user_id(errors, "user_id", user_id)
        if amount_demand is None and amount_sub is None:
            errors.setdefault("update", []).append("At least one amount must be provided")
        if amount_demand is not None:
            check_amount(errors, "amount_demand", amount_demand)
        if amount_sub is not None:
            check_amount(errors, "amount_sub", amount_sub)
        raise_if_errors(errors)

        try:
            async with self.repository.transaction() as conn:
                credits = await self._require_balance(user_id, conn)
                demand_delta = 0 if amount_demand is None else amount_demand - credits.amount_demand
                sub_delta = 0 if amount_sub is None else amount_sub - credits.amount_sub
                if demand_delta or sub_delta:
                    credits = await self.ledger.apply(conn, credits, demand_delta, sub_delta, "Credits adjusted")
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to update credits for user {user_id}: {e}")
            raise OperationFailedError("update_user_credits", user_id=user_id) from e

        await self._invalidate(user_id)
        return credits

    async def delete_user_credits(self, user_id: str) -> bool:
        """Soft-delete a balance; its history stays referenced"""
        errors = {}
        check_user_id(errors, "user_id", user_id)
        raise_if_errors(errors)

        try:
            async with self.repository.transaction() as conn:
                credits = await self._require_balance(user_id, conn)
                deleted = await self.repository.soft_delete_credits(credits.credits_id, conn=conn)
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to delete credits for user {user_id}: {e}")
            raise OperationFailedError("delete_user_credits", user_id=user_id) from e

        logger.info(f"Deleted credits {credits.credits_id} of user {user_id}")
        await self._invalidate(user_id)
        return deleted

    # ====================
    # Credit Grants
    # ====================

    async def add_credits_to_user(
        self,
        user_id: str,
        amount: int,
        description: str,
        promo_code: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> CreditBalance:
        """
        Add demand credits, with an optional promo code bonus.

        The promo code is redeemed with structured errors and a usage row in
        the same transaction as the balance change.

        Raises:
            ValidationError: On malformed input
            ResourceNotFound: If the promo code does not exist
            InvalidPromoCodeError: If the promo code cannot be used
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        check_amount(errors, "amount", amount, positive=True)
        check_description(errors, "description", description)
        raise_if_errors(errors)

        redemption = None
        bonus = 0
        try:
            async with self.repository.transaction() as conn:
                if promo_code:
                    redemption = await self.promo_code_service.redeem_in_transaction(
                        promo_code, user_id, conn, transaction_id=transaction_id
                    )
                    bonus = compute_bonus(amount, redemption.promo_code.discount)
                credits = await self.ledger.lock_or_open_balance(user_id, conn)
                credits = await self.ledger.apply(
                    conn, credits, amount + bonus, 0, description, transaction_id=transaction_id
                )
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to add credits to user {user_id}: {e}")
            raise OperationFailedError("add_credits_to_user", user_id=user_id, promo_code=promo_code) from e

        logger.info(f"Added {amount + bonus} credits to user {user_id} (bonus {bonus})")
        await self._invalidate(user_id)
        if redemption:
            await self.promo_code_service.publish_redemption(redemption)
        await publish_credit_added(
            self.event_bus, credits, amount + bonus, bonus_amount=bonus,
            promo_code=promo_code, transaction_id=transaction_id,
        )
        return credits

    async def add_credits_with_payment(
        self,
        user_id: str,
        amount: int,
        acting_role: Any,
        promo_code: Optional[str] = None,
        price: Optional[float] = None,
        description: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        pack_id: Optional[str] = None,
    ) -> PaymentTransactionResult:
        """
        Purchase demand credits through the payment orchestrator.

        Promo code errors keep their legacy literal messages. A purchase that
        names a credit pack takes its amount and price from the pack.

        Raises:
            BusinessRuleViolation: If the acting role may not purchase or the pack is inactive
            ResourceNotFound: If the pack does not exist
            LegacyPromoCodeError: If the promo code is missing or unavailable
            ExternalServiceError: If the payment gateway fails
        """
        role = acting_role.value if isinstance(acting_role, UserRole) else acting_role
        if role not in PURCHASE_ROLES:
            raise BusinessRuleViolation("Invalid user role for credit purchase", details={"role": role})
        if pack_id:
            if self.credit_pack_service is None:
                raise BusinessRuleViolation("Credit packs are not available", details={"pack_id": pack_id})
            pack = await self.credit_pack_service.get_purchasable_pack(pack_id)
            amount = pack.amount
            price = pack.price
        if (
            role == UserRole.PROFESSIONAL.value
            and isinstance(amount, int)
            and amount > self.config.professional_purchase_warning
        ):
            logger.warning(f"Professional user {user_id} is purchasing {amount} credits")

        if description is None:
            description = f"Added {amount} on demand credits."
            if promo_code:
                description += f" (with promo code {promo_code})"

        result = await self.transaction_service.execute_payment_transaction(
            user_id=user_id,
            amount=amount,
            description=description,
            promo_code=promo_code,
            price=price,
            payment_method_id=payment_method_id,
        )

        await self._invalidate(user_id)
        await publish_credit_added(
            self.event_bus,
            result.credits,
            result.final_amount,
            bonus_amount=result.bonus_amount,
            promo_code=result.promo_code_used,
            transaction_id=result.payment_intent_id,
        )
        return result

    async def grant_subscription_credits(
        self,
        user_id: str,
        amount: int,
        plan_type: Any,
        reference_id: Optional[str] = None,
    ) -> CreditBalance:
        """
        Add a plan's monthly credits to amount_sub.

        ``reference_id`` (the paid invoice) makes the grant idempotent: a
        redelivered webhook or event for an already-granted reference returns
        the balance unchanged.
        """
        plan = plan_type.value if hasattr(plan_type, "value") else plan_type
        errors = {}
        check_user_id(errors, "user_id", user_id)
        check_amount(errors, "amount", amount, positive=True)
        raise_if_errors(errors)

        try:
            async with self.repository.transaction() as conn:
                credits = await self.ledger.lock_or_open_balance(user_id, conn)
                if reference_id and await self.repository.has_history_for_transaction(
                    user_id, reference_id, conn=conn
                ):
                    logger.info(f"Subscription credits for {reference_id} already granted to user {user_id}")
                    return credits
                credits = await self.ledger.apply(
                    conn, credits, 0, amount, f"Monthly {plan} subscription credits",
                    transaction_id=reference_id,
                )
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to grant subscription credits to user {user_id}: {e}")
            raise OperationFailedError("grant_subscription_credits", user_id=user_id, reference_id=reference_id) from e

        logger.info(f"Granted {amount} {plan} subscription credits to user {user_id}")
        await self._invalidate(user_id)
        await publish_subscription_credits_granted(self.event_bus, credits, amount, plan, reference_id)
        return credits

    # ====================
    # Consumption
    # ====================

    async def consume_user_credits(
        self,
        user_id: str,
        demand_amount: int = 0,
        sub_amount: int = 0,
        description: str = "",
    ) -> CreditBalance:
        """
        Consume exact amounts from each bucket. All-or-nothing.

        Raises:
            ValidationError: On malformed input
            BusinessRuleViolation: If both amounts are zero
            InsufficientCreditsError: If either bucket is short
            ResourceNotFound: If the user has no balance
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        check_amount(errors, "demand_amount", demand_amount)
        check_amount(errors, "sub_amount", sub_amount)
        check_description(errors, "description", description)
        raise_if_errors(errors)

        if demand_amount == 0 and sub_amount == 0:
            raise BusinessRuleViolation("Invalid credit consumption", details="Nothing to consume")

        try:
            async with self.repository.transaction() as conn:
                credits = await self._require_balance(user_id, conn)
                credits = await self.ledger.apply(conn, credits, -demand_amount, -sub_amount, description)
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to consume credits of user {user_id}: {e}")
            raise OperationFailedError("consume_user_credits", user_id=user_id) from e

        logger.info(f"User {user_id} consumed {demand_amount} demand and {sub_amount} sub credits")
        await self._invalidate(user_id)
        await publish_credit_consumed(self.event_bus, credits, demand_amount, sub_amount, description)
        return credits

    async def consume_user_credits_with_priority(
        self, user_id: str, amount: int, description: str
    ) -> CreditBalance:
        """
        Consume ``amount`` credits, subscription credits first.

        Takes min(amount, amount_sub) from amount_sub and the rest from
        amount_demand.

        Raises:
            InsufficientCreditsError: If both buckets together hold less than amount
        """
        errors = {}
        check_user_id(errors, "user_id", user_id)
        check_amount(errors, "amount", amount)
        check_description(errors, "description", description)
        raise_if_errors(errors)

        if amount == 0:
            raise BusinessRuleViolation("Invalid credit consumption", details="Nothing to consume")

        try:
            async with self.repository.transaction() as conn:
                credits = await self._require_balance(user_id, conn)
                from_sub, from_demand = plan_priority_consumption(
                    credits.amount_sub, credits.amount_demand, amount
                )
                credits = await self.ledger.apply(conn, credits, -from_demand, -from_sub, description)
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to consume credits of user {user_id}: {e}")
            raise OperationFailedError("consume_user_credits_with_priority", user_id=user_id) from e

        logger.info(f"User {user_id} consumed {from_sub} sub and {from_demand} demand credits")
        await self._invalidate(user_id)
        await publish_credit_consumed(self.event_bus, credits, from_demand, from_sub, description)
        return credits

    # ====================
    # Transfers
    # ====================

    async def transfer_credits(
        self,
        from_user_id: str,
        to_user_id: str,
        amount: int,
        description: str,
        acting_role: Any,
    ) -> TransferResult:
        """
        Transfer demand credits between users.

        Raises:
            BusinessRuleViolation: On role policy, self-transfer or shortfall
            TransferLimitExceededError: If a MEMBER exceeds the per-transfer cap
        """
        result = await self.transaction_service.execute_credits_transfer_transaction(
            from_user_id, to_user_id, amount, description, acting_role
        )

        await self._invalidate(from_user_id, to_user_id)
        role = acting_role.value if isinstance(acting_role, UserRole) else acting_role
        await publish_credit_transferred(self.event_bus, from_user_id, to_user_id, amount, role, description)
        return result

    # ====================
    # Health
    # ====================

    async def health_check(self) -> Dict[str, Any]:
        """Report dependency health for the /health endpoint"""
        dependencies: Dict[str, Any] = {}
        db = getattr(self.repository, "db", None)
        if db is not None and hasattr(db, "health_check"):
            try:
                dependencies["postgres"] = await db.health_check()
            except Exception as e:
                dependencies["postgres"] = {"healthy": False, "error": str(e)}
        if self.cache is not None and hasattr(self.cache, "ping"):
            dependencies["redis"] = {"healthy": await self.cache.ping()}
        if self.event_bus is not None:
            dependencies["nats"] = {"healthy": bool(getattr(self.event_bus, "is_connected", False))}
        return dependencies


__all__ = ["CreditService", "PURCHASE_ROLES"]
