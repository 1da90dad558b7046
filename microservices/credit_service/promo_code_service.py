"""
Promo Code Service - Business Logic Layer

Promo code registry: validation, redemption and admin lifecycle.

Redemption has two entry points over one state-mutation primitive
(``_redeem``):
- Modern: structured errors (ResourceNotFound, InvalidPromoCodeError)
  and a usage row per user.
- Legacy: the two literal messages existing clients match on
  ('Promotional code does not exists.', 'Unavailable promotional code.').

Lifecycle: ACTIVE -> EXHAUSTED (amount_available == 0), ACTIVE|EXHAUSTED ->
CANCELLED (terminal). EXPIRED is computed from the clock at validation time.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .events.publishers import publish_promo_code_cancelled, publish_promo_code_used
from .ledger import is_integer, raise_if_errors
from .models import (
    PromoCode,
    PromoCodeRedemption,
    PromoCodeTransactionResult,
    PromoCodeUsage,
    PromoCodeValidation,
)
from .protocols import (
    PROMO_CODE_NOT_FOUND_MESSAGE,
    PROMO_CODE_UNAVAILABLE_MESSAGE,
    BusinessRuleViolation,
    ConflictError,
    CreditServiceError,
    EventBusProtocol,
    InvalidPromoCodeError,
    LegacyPromoCodeError,
    OperationFailedError,
    PromoCodeRepositoryProtocol,
    ResourceNotFound,
)

logger = logging.getLogger(__name__)

REASON_NOT_FOUND = "Promo code not found"
REASON_INACTIVE = "Promo code is not active"
REASON_CANCELLED = "Promo code has been cancelled"
REASON_EXHAUSTED = "Promo code has no remaining uses"
REASON_EXPIRED = "Promo code has expired"
REASON_ALREADY_USED = "You have already used this promo code"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ====================
# Error Formatting Strategies
# ====================


class _ModernPromoErrors:
    """Structured errors carrying the failing check"""

    @staticmethod
    def not_found(code: str) -> CreditServiceError:
        return ResourceNotFound("Promo code", code)

    @staticmethod
    def unavailable(reason: str) -> CreditServiceError:
        return InvalidPromoCodeError(reason)


class _LegacyPromoErrors:
    """Literal messages, never reworded"""

    @staticmethod
    def not_found(code: str) -> CreditServiceError:
        return LegacyPromoCodeError(PROMO_CODE_NOT_FOUND_MESSAGE)

    @staticmethod
    def unavailable(reason: str) -> CreditServiceError:
        return LegacyPromoCodeError(PROMO_CODE_UNAVAILABLE_MESSAGE)


class PromoCodeService:
    """
    Promo Code Service - Core business logic

    Handles:
    - Per-user validation in a fixed check order
    - Atomic redemption (row lock + guarded decrement + usage row)
    - Admin create/update/cancel/delete with counter invariants
    """

    def __init__(
        self,
        repository: PromoCodeRepositoryProtocol,
        event_bus: Optional[EventBusProtocol] = None,
    ):
        """
        Initialize promo code service.

        Args:
            repository: Promo code repository (shares its store with the credit repository)
            event_bus: Event bus for publishing events (optional)
        """
        self.repository = repository
        self.event_bus = event_bus

    # ====================
    # Validation
    # ====================

    @staticmethod
    def _availability_reason(promo: PromoCode, now: datetime) -> Optional[str]:
        """First failing state check, or None when the code can be used"""
        if promo.cancelled_at is not None:
            return REASON_CANCELLED
        if not promo.active:
            return REASON_INACTIVE
        if promo.amount_available <= 0:
            return REASON_EXHAUSTED
        if _aware(promo.expiration_date) <= now:
            return REASON_EXPIRED
        return None

    async def validate_for_user(self, code: str, user_id: str) -> PromoCodeValidation:
        """
        Check whether a user can redeem a code right now.

        Checks, in order: exists -> active -> remaining uses -> not expired ->
        not already used by this user. Never mutates state.

        Returns:
            PromoCodeValidation with the first failing reason
        """
        promo = await self.repository.get_promo_code_by_code(code)
        if promo is None:
            return PromoCodeValidation(valid=False, reason=REASON_NOT_FOUND)

        reason = self._availability_reason(promo, _utcnow())
        if reason is None:
            usage = await self.repository.get_user_usage(promo.promo_code_id, user_id)
            if usage is not None:
                reason = REASON_ALREADY_USED

        if reason:
            return PromoCodeValidation(valid=False, reason=reason, promo_code=promo)
        return PromoCodeValidation(valid=True, promo_code=promo)

    # ====================
    # Redemption
    # ====================

    async def _redeem(
        self,
        conn: Any,
        code: str,
        errors,
        user_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> PromoCodeRedemption:
        """
        Lock, re-check, decrement and record a use inside the caller's transaction.

        Args:
            conn: Transaction connection
            code: Promo code string
            errors: Error formatting strategy
            user_id: Redeeming user; when given, enforces one use per user and
                records a usage row
            transaction_id: Optional payment correlation id for the usage row
        """
        promo = await self.repository.get_promo_code_by_code(code, conn=conn, for_update=True)
        if promo is None:
            raise errors.not_found(code)

        reason = self._availability_reason(promo, _utcnow())
        if reason is None and user_id is not None:
            if await self.repository.get_user_usage(promo.promo_code_id, user_id, conn=conn):
                reason = REASON_ALREADY_USED
        if reason:
            logger.info(f"Promo code {code} rejected: {reason}")
            raise errors.unavailable(reason)

        updated = await self.repository.decrement_amount_available(promo.promo_code_id, conn=conn)
        if updated is None:
            # Lost the race for the last redemption
            raise errors.unavailable(REASON_EXHAUSTED)

        usage = None
        if user_id is not None:
            usage = await self.repository.create_usage(
                {
                    "promo_code_id": promo.promo_code_id,
                    "user_id": user_id,
                    "transaction_id": transaction_id,
                },
                conn=conn,
            )

        logger.info(
            f"Promo code {code} redeemed by {user_id or 'anonymous'}, "
            f"{updated.amount_available} uses left"
        )
        return PromoCodeRedemption(promo_code=updated, usage=usage)

    async def redeem_in_transaction(
        self, code: str, user_id: str, conn: Any, transaction_id: Optional[str] = None
    ) -> PromoCodeRedemption:
        """Modern redemption inside a transaction owned by the caller"""
        return await self._redeem(conn, code, _ModernPromoErrors, user_id=user_id, transaction_id=transaction_id)

    async def redeem_legacy_in_transaction(
        self,
        code: str,
        conn: Any,
        user_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> PromoCodeRedemption:
        """Legacy-format redemption inside a transaction owned by the caller"""
        return await self._redeem(conn, code, _LegacyPromoErrors, user_id=user_id, transaction_id=transaction_id)

    async def redeem_once_in_transaction(
        self, code: str, user_id: str, conn: Any, transaction_id: Optional[str] = None
    ) -> PromoCodeTransactionResult:
        """
        Legacy-format redemption that treats a repeat by the same user as a no-op.

        A buyer who already redeemed the code gets their existing usage back
        with ``used=False`` and nothing is consumed.
        """
        promo = await self.repository.get_promo_code_by_code(code, conn=conn, for_update=True)
        if promo is None:
            raise _LegacyPromoErrors.not_found(code)
        reason = self._availability_reason(promo, _utcnow())
        if reason:
            logger.info(f"Promo code {code} rejected: {reason}")
            raise _LegacyPromoErrors.unavailable(reason)

        usage = await self.repository.get_user_usage(promo.promo_code_id, user_id, conn=conn)
        if usage is not None:
            logger.info(f"Promo code {code} already redeemed by {user_id}, nothing consumed")
            return PromoCodeTransactionResult(promo_code=promo, used=False, usage=usage)

        redemption = await self._redeem(
            conn, code, _LegacyPromoErrors, user_id=user_id, transaction_id=transaction_id
        )
        return PromoCodeTransactionResult(promo_code=redemption.promo_code, used=True, usage=redemption.usage)

    async def use_promo_code(
        self, code: str, user_id: str, transaction_id: Optional[str] = None
    ) -> PromoCodeRedemption:
        """
        Redeem a code for a user in its own transaction.

        Raises:
            ValidationError: If code or user_id is missing
            ResourceNotFound: If the code does not exist
            InvalidPromoCodeError: If the code cannot be used (reason attached)
        """
        errors: Dict[str, List[str]] = {}
        if not isinstance(code, str) or not code.strip():
            errors.setdefault("code", []).append("Code is required")
        if not isinstance(user_id, str) or not user_id.strip():
            errors.setdefault("user_id", []).append("User ID is required and must be a string")
        raise_if_errors(errors)

        try:
            async with self.repository.transaction() as conn:
                redemption = await self.redeem_in_transaction(code, user_id, conn, transaction_id)
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to use promo code {code} for user {user_id}: {e}")
            raise OperationFailedError("use_promo_code", code=code, user_id=user_id) from e

        await publish_promo_code_used(self.event_bus, redemption.promo_code, redemption.usage)
        return redemption

    async def use_promo_code_legacy(self, code: str) -> PromoCode:
        """
        Legacy redemption without user context.

        Raises:
            LegacyPromoCodeError: 'Promotional code does not exists.' or
                'Unavailable promotional code.', verbatim
        """
        try:
            async with self.repository.transaction() as conn:
                redemption = await self.redeem_legacy_in_transaction(code, conn)
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to use promo code {code}: {e}")
            raise OperationFailedError("use_promo_code_legacy", code=code) from e

        await publish_promo_code_used(self.event_bus, redemption.promo_code)
        return redemption.promo_code

    async def publish_redemption(self, redemption: PromoCodeRedemption) -> None:
        """Publish promo_code.used for a redemption committed by another service"""
        await publish_promo_code_used(self.event_bus, redemption.promo_code, redemption.usage)

    # ====================
    # Admin Operations
    # ====================

    @staticmethod
    def _check_fields(errors: Dict[str, List[str]], data: Dict[str, Any], now: datetime) -> None:
        if "code" in data:
            code = data["code"]
            if not isinstance(code, str) or not code.strip():
                errors.setdefault("code", []).append("Code is required")
        if "discount" in data:
            discount = data["discount"]
            if not is_integer(discount):
                errors.setdefault("discount", []).append("Discount must be an integer")
            elif not 0 <= discount <= 100:
                errors.setdefault("discount", []).append("Discount must be between 0 and 100")
        for field, label in (("allowed_times", "Allowed times"), ("amount_available", "Amount available")):
            if field in data:
                value = data[field]
                if not is_integer(value) or value <= 0:
                    errors.setdefault(field, []).append(f"{label} must be a positive integer")
        if "expiration_date" in data:
            expiration = data["expiration_date"]
            if not isinstance(expiration, datetime):
                errors.setdefault("expiration_date", []).append("Expiration date must be a datetime")
            elif _aware(expiration) <= now:
                errors.setdefault("expiration_date", []).append("Expiration date must be in the future")

    @staticmethod
    def _check_counters(errors: Dict[str, List[str]], allowed_times: Any, amount_available: Any) -> None:
        if errors.get("allowed_times") or errors.get("amount_available"):
            return
        if amount_available > allowed_times:
            errors.setdefault("amount_available", []).append(
                "Amount available cannot exceed allowed times"
            )

    async def create_promo_code(
        self,
        code: str,
        discount: int,
        allowed_times: int,
        amount_available: int,
        expiration_date: datetime,
        created_by: Optional[str] = None,
        active: bool = True,
    ) -> PromoCode:
        """
        Create a promo code.

        Raises:
            ValidationError: On malformed fields or amount_available > allowed_times
            ConflictError: If the code already exists
        """
        data = {
            "code": code,
            "discount": discount,
            "allowed_times": allowed_times,
            "amount_available": amount_available,
            "expiration_date": expiration_date,
        }
        errors: Dict[str, List[str]] = {}
        self._check_fields(errors, data, _utcnow())
        self._check_counters(errors, allowed_times, amount_available)
        raise_if_errors(errors)

        if await self.repository.get_promo_code_by_code(code):
            raise ConflictError("Promo code already exists", details={"code": code})

        data["expiration_date"] = _aware(expiration_date)
        data["active"] = active
        data["created_by"] = created_by
        try:
            promo = await self.repository.create_promo_code(data)
        except Exception as e:
            logger.error(f"Failed to create promo code {code}: {e}")
            raise OperationFailedError("create_promo_code", code=code) from e

        logger.info(f"Promo code {code} created by {created_by} ({discount}% x {allowed_times})")
        return promo

    async def update_promo_code(self, promo_code_id: str, update_data: Dict[str, Any]) -> PromoCode:
        """
        Update a promo code under its row lock.

        Counter checks run against the locked row, so an admin write cannot
        overwrite a redemption that committed in between. A deactivated code
        may be switched back on; a cancelled one may not.

        Raises:
            ValidationError: On malformed fields, empty update or broken counters
            ResourceNotFound: If the promo code does not exist
            BusinessRuleViolation: If the code is cancelled (re-activation included)
            ConflictError: If the new code clashes with another promo code
        """
        data = {key: value for key, value in update_data.items() if value is not None}
        if not data:
            raise_if_errors({"update": ["At least one field must be provided"]})

        errors: Dict[str, List[str]] = {}
        self._check_fields(errors, data, _utcnow())
        raise_if_errors(errors)
        if "expiration_date" in data:
            data["expiration_date"] = _aware(data["expiration_date"])

        try:
            async with self.repository.transaction() as conn:
                promo = await self.repository.get_promo_code_by_id(promo_code_id, conn=conn, for_update=True)
                if promo is None:
                    raise ResourceNotFound("Promo code", promo_code_id)
                if promo.cancelled_at is not None:
                    if data.get("active") is True:
                        raise BusinessRuleViolation("Cannot re-activate cancelled promo code")
                    raise BusinessRuleViolation("Cannot update cancelled promo code")

                self._check_counters(
                    errors,
                    data.get("allowed_times", promo.allowed_times),
                    data.get("amount_available", promo.amount_available),
                )
                raise_if_errors(errors)

                if "code" in data and data["code"] != promo.code:
                    if await self.repository.get_promo_code_by_code(data["code"], conn=conn):
                        raise ConflictError("Promo code already exists", details={"code": data["code"]})

                updated = await self.repository.update_promo_code(promo_code_id, data, conn=conn)
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to update promo code {promo_code_id}: {e}")
            raise OperationFailedError("update_promo_code", promo_code_id=promo_code_id) from e

        logger.info(f"Promo code {promo_code_id} updated: {sorted(data)}")
        return updated

    async def cancel_promo_code(self, promo_code_id: str) -> PromoCode:
        """
        Cancel a promo code. Terminal: a cancelled code cannot be updated or
        re-activated.
        """
        promo = await self.get_promo_code(promo_code_id)
        if promo.cancelled_at is not None:
            raise BusinessRuleViolation("Promo code already cancelled")
        if not promo.active:
            raise BusinessRuleViolation("Promo code already inactive")

        cancelled_at = _utcnow()
        try:
            cancelled = await self.repository.update_promo_code(
                promo_code_id, {"active": False, "cancelled_at": cancelled_at}
            )
        except Exception as e:
            logger.error(f"Failed to cancel promo code {promo_code_id}: {e}")
            raise OperationFailedError("cancel_promo_code", promo_code_id=promo_code_id) from e

        logger.info(f"Promo code {promo.code} cancelled")
        await publish_promo_code_cancelled(self.event_bus, cancelled, cancelled_at)
        return cancelled

    async def delete_promo_code(self, promo_code_id: str) -> bool:
        """
        Hard-delete a promo code that was never used.

        Legacy redemptions leave no usage row, so a counter below
        allowed_times also counts as used. The check and the delete share
        one transaction holding the row lock.

        Raises:
            ResourceNotFound: If the promo code does not exist
            BusinessRuleViolation: If the code was ever redeemed
        """
        try:
            async with self.repository.transaction() as conn:
                promo = await self.repository.get_promo_code_by_id(promo_code_id, conn=conn, for_update=True)
                if promo is None:
                    raise ResourceNotFound("Promo code", promo_code_id)
                if (
                    promo.amount_available < promo.allowed_times
                    or await self.repository.count_usages(promo_code_id, conn=conn) > 0
                ):
                    raise BusinessRuleViolation(
                        "Cannot delete used promo code",
                        details="Promo codes that have been used cannot be deleted. Consider cancelling instead.",
                    )
                deleted = await self.repository.delete_promo_code(promo_code_id, conn=conn)
        except CreditServiceError:
            raise
        except Exception as e:
            logger.error(f"Failed to delete promo code {promo_code_id}: {e}")
            raise OperationFailedError("delete_promo_code", promo_code_id=promo_code_id) from e

        logger.info(f"Promo code {promo.code} deleted")
        return deleted

    # ====================
    # Queries
    # ====================

    async def get_promo_code(self, promo_code_id: str) -> PromoCode:
        promo = await self.repository.get_promo_code_by_id(promo_code_id)
        if promo is None:
            raise ResourceNotFound("Promo code", promo_code_id)
        return promo

    async def get_promo_code_by_code(self, code: str) -> PromoCode:
        promo = await self.repository.get_promo_code_by_code(code)
        if promo is None:
            raise ResourceNotFound("Promo code", code)
        return promo

    async def list_promo_codes(self, active_only: bool = False) -> List[PromoCode]:
        return await self.repository.list_promo_codes(active_only=active_only)

    async def get_promo_code_usages(self, promo_code_id: str) -> List[PromoCodeUsage]:
        await self.get_promo_code(promo_code_id)
        return await self.repository.get_usages_by_promo_code_id(promo_code_id)

    async def get_user_promo_code_usages(self, user_id: str) -> List[PromoCodeUsage]:
        return await self.repository.get_usages_by_user_id(user_id)


__all__ = ["PromoCodeService"]
