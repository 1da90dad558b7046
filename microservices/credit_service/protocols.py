"""
Credit Service Protocols

Defines interfaces for dependency injection and testing.
Following the protocol-based architecture pattern.
"""

from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol, runtime_checkable

from .models import (
    CreditBalance,
    CreditHistoryEntry,
    CreditPack,
    Membership,
    PromoCode,
    PromoCodeUsage,
)


# ====================
# Repository Protocols
# ====================


@runtime_checkable
class CreditRepositoryProtocol(Protocol):
    """Repository interface for balances and credit history (the Ledger Store)"""

    def transaction(self) -> AsyncContextManager[Any]:
        """
        Open a transaction scope.

        Yields a connection handle to pass as ``conn`` to any repository call
        that must commit or roll back with the others.
        """
        ...

    async def get_credits_by_user_id(
        self, user_id: str, conn: Any = None, for_update: bool = False
    ) -> Optional[CreditBalance]:
        """
        Get the live (not soft-deleted) balance of a user.

        Args:
            user_id: User identifier
            conn: Optional transaction connection
            for_update: Lock the row until the transaction ends

        Returns:
            Balance or None if the user has none
        """
        ...

    async def create_credits(
        self, user_id: str, amount_demand: int = 0, amount_sub: int = 0, conn: Any = None
    ) -> CreditBalance:
        """Insert a new balance row"""
        ...

    async def update_credits_amounts(
        self, credits_id: str, amount_demand: int, amount_sub: int, conn: Any = None
    ) -> CreditBalance:
        """Overwrite both bucket amounts of a balance"""
        ...

    async def soft_delete_credits(self, credits_id: str, conn: Any = None) -> bool:
        """Mark a balance as deleted, keeping it for history references"""
        ...

    async def create_history_entry(self, entry_data: Dict[str, Any], conn: Any = None) -> CreditHistoryEntry:
        """Append a history entry"""
        ...

    async def get_history_by_user_id(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[CreditHistoryEntry]:
        """Get history entries for a user, newest first"""
        ...

    async def has_history_for_transaction(self, user_id: str, transaction_id: str, conn: Any = None) -> bool:
        """Whether any history entry of the user carries this transaction id"""
        ...


@runtime_checkable
class PromoCodeRepositoryProtocol(Protocol):
    """Repository interface for promo codes and their usages"""

    def transaction(self) -> AsyncContextManager[Any]:
        """Open a transaction scope shared with the credit repository"""
        ...

    async def get_promo_code_by_id(
        self, promo_code_id: str, conn: Any = None, for_update: bool = False
    ) -> Optional[PromoCode]:
        ...

    async def get_promo_code_by_code(
        self, code: str, conn: Any = None, for_update: bool = False
    ) -> Optional[PromoCode]:
        """
        Get promo code by its exact (case-sensitive) code.

        Args:
            code: Code string
            conn: Optional transaction connection
            for_update: Lock the row until the transaction ends
        """
        ...

    async def list_promo_codes(self, active_only: bool = False) -> List[PromoCode]:
        ...

    async def create_promo_code(self, promo_data: Dict[str, Any]) -> PromoCode:
        ...

    async def update_promo_code(
        self, promo_code_id: str, update_data: Dict[str, Any], conn: Any = None
    ) -> Optional[PromoCode]:
        ...

    async def delete_promo_code(self, promo_code_id: str, conn: Any = None) -> bool:
        ...

    async def decrement_amount_available(self, promo_code_id: str, conn: Any = None) -> Optional[PromoCode]:
        """
        Decrement amount_available by one if it is above zero.

        Returns:
            Updated promo code, or None when no redemption was left
        """
        ...

    async def create_usage(self, usage_data: Dict[str, Any], conn: Any = None) -> PromoCodeUsage:
        ...

    async def get_user_usage(
        self, promo_code_id: str, user_id: str, conn: Any = None
    ) -> Optional[PromoCodeUsage]:
        ...

    async def count_usages(self, promo_code_id: str, conn: Any = None) -> int:
        ...

    async def get_usages_by_promo_code_id(self, promo_code_id: str) -> List[PromoCodeUsage]:
        ...

    async def get_usages_by_user_id(self, user_id: str) -> List[PromoCodeUsage]:
        ...


@runtime_checkable
class MembershipRepositoryProtocol(Protocol):
    """Repository interface for memberships"""

    async def create_membership(self, membership_data: Dict[str, Any]) -> Membership:
        ...

    async def get_membership_by_id(self, membership_id: str) -> Optional[Membership]:
        ...

    async def get_membership_by_user_id(self, user_id: str) -> Optional[Membership]:
        ...

    async def get_membership_by_customer_id(self, stripe_customer_id: str) -> Optional[Membership]:
        ...

    async def get_membership_by_subscription_id(self, stripe_subscription_id: str) -> Optional[Membership]:
        ...

    async def update_membership(self, membership_id: str, update_data: Dict[str, Any]) -> Optional[Membership]:
        ...

    async def delete_membership(self, membership_id: str) -> bool:
        ...


@runtime_checkable
class CreditPackRepositoryProtocol(Protocol):
    """Repository interface for the purchasable credit pack catalog"""

    async def get_all_credit_packs(self) -> List[CreditPack]:
        """All packs, active first, newest first"""
        ...

    async def get_active_credit_packs(self) -> List[CreditPack]:
        """Active packs, smallest amount first"""
        ...

    async def get_credit_pack_by_id(self, pack_id: str) -> Optional[CreditPack]:
        ...

    async def create_credit_pack(self, pack_data: Dict[str, Any]) -> CreditPack:
        ...

    async def update_credit_pack(self, pack_id: str, update_data: Dict[str, Any]) -> Optional[CreditPack]:
        ...

    async def delete_credit_pack(self, pack_id: str) -> bool:
        ...


# ====================
# Infrastructure Protocols
# ====================


@runtime_checkable
class CacheProtocol(Protocol):
    """Best-effort cache: failures are reported, never raised"""

    async def get_json(self, key: str) -> Optional[Any]:
        ...

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        ...

    async def delete(self, *keys: str) -> bool:
        ...

    async def incr(self, key: str, ttl_seconds: int) -> Optional[int]:
        """Increment a counter, or None when the cache is unavailable"""
        ...


@runtime_checkable
class EventBusProtocol(Protocol):
    """Event bus interface for publishing events"""

    async def publish_event(self, event: Any) -> bool:
        ...


@runtime_checkable
class PaymentGatewayProtocol(Protocol):
    """Payment gateway interface (Stripe in production)"""

    async def confirm_payment(
        self,
        amount: float,
        metadata: Dict[str, Any],
        payment_method: Optional[str] = None,
        customer: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Charge ``amount`` to ``payment_method`` and return ``{"payment_intent_id": ...}``.

        A retried call with the same ``idempotency_key`` never charges twice.
        Raises on any gateway failure.
        """
        ...

    async def cancel_payment(self, payment_intent_id: str) -> bool:
        """Void a charge: cancel it if still pending, refund it if it settled"""
        ...

    async def create_customer(self, email: str, name: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        ...

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        ...

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        ...


# ====================
# Custom Exceptions
# ====================


class CreditServiceError(Exception):
    """Base exception for credit service errors"""

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(CreditServiceError):
    """Raised when input is malformed; carries field -> reasons"""

    def __init__(self, errors: Dict[str, List[str]]):
        self.errors = errors
        summary = "; ".join(f"{field}: {', '.join(reasons)}" for field, reasons in errors.items())
        super().__init__(f"Validation failed: {summary}", details=errors)


class BusinessRuleViolation(CreditServiceError):
    """Raised when an operation is invalid given the current state"""
    pass


class InsufficientCreditsError(BusinessRuleViolation):
    """Raised when user has insufficient credits"""

    def __init__(
        self,
        details: str,
        available: Optional[int] = None,
        required: Optional[int] = None,
    ):
        super().__init__("Insufficient credits", details=details)
        self.available = available
        self.required = required


class TransferLimitExceededError(BusinessRuleViolation):
    """Raised when a role-capped transfer exceeds its limit"""

    def __init__(self, limit: int, requested: int, details: str):
        super().__init__("Transfer limit exceeded", details=details)
        self.limit = limit
        self.requested = requested


class InvalidPromoCodeError(BusinessRuleViolation):
    """Raised when a promo code cannot be used by this user right now"""

    def __init__(self, reason: str):
        super().__init__("Invalid promo code", details=reason)
        self.reason = reason


class ConflictError(BusinessRuleViolation):
    """Raised when a resource with the same identity already exists"""
    pass


class ResourceNotFound(CreditServiceError):
    """Raised when a referenced balance, promo code or membership is missing"""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found", details={"resource": resource, "id": identifier})
        self.resource = resource
        self.identifier = identifier


class ExternalServiceError(CreditServiceError):
    """Raised when a collaborator (payment gateway) fails or times out"""

    def __init__(self, service: str, message: str):
        super().__init__(message, details={"service": service})
        self.service = service


class OperationFailedError(CreditServiceError):
    """Wraps an unexpected infrastructure error with the operation and ids involved"""

    def __init__(self, operation: str, **context: Any):
        super().__init__(f"{operation} failed", details=context)
        self.operation = operation
        self.context = context


class LegacyPromoCodeError(CreditServiceError):
    """
    Legacy promo code failure.

    ``str(error)`` is exactly one of the literal messages existing clients
    match on, so this error is never wrapped or reworded.
    """
    pass


PROMO_CODE_NOT_FOUND_MESSAGE = "Promotional code does not exists."
PROMO_CODE_UNAVAILABLE_MESSAGE = "Unavailable promotional code."


__all__ = [
    "CreditRepositoryProtocol",
    "PromoCodeRepositoryProtocol",
    "MembershipRepositoryProtocol",
    "CreditPackRepositoryProtocol",
    "CacheProtocol",
    "EventBusProtocol",
    "PaymentGatewayProtocol",
    "CreditServiceError",
    "ValidationError",
    "BusinessRuleViolation",
    "InsufficientCreditsError",
    "TransferLimitExceededError",
    "InvalidPromoCodeError",
    "ConflictError",
    "ResourceNotFound",
    "ExternalServiceError",
    "OperationFailedError",
    "LegacyPromoCodeError",
    "PROMO_CODE_NOT_FOUND_MESSAGE",
    "PROMO_CODE_UNAVAILABLE_MESSAGE",
]
