"""
Credit Service Component Test Fixtures

Provides mocks for credit service component testing:
- MockLedgerDatabase: In-memory store whose transaction() snapshots state and
  restores it when the block raises
- MockCreditRepository / MockPromoCodeRepository / MockMembershipRepository:
  Protocol implementations over the shared MockLedgerDatabase
- MockEventBus: Mock event publishing
- MockCreditPackRepository: In-memory credit pack catalog
- MockCache: In-memory balance cache
- MockPaymentGateway: Scriptable payment gateway
"""

import asyncio
import copy
import pytest
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional

from microservices.credit_service.models import (
    CreditBalance,
    CreditHistoryEntry,
    CreditPack,
    Membership,
    PromoCode,
    PromoCodeUsage,
)
from tests.contracts.credit.data_contract import CreditTestDataFactory


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


# =============================================================================
# Mock Database
# =============================================================================


class MockLedgerDatabase:
    """
    In-memory tables shared by the mock repositories.

    ``transaction()`` deep-copies every table on entry and restores the copy
    if the block raises, mirroring a database rollback.
    """

    TABLES = ("credits", "history", "promo_codes", "usages", "memberships")

    def __init__(self):
        self.credits: Dict[str, Dict[str, Any]] = {}
        self.history: List[Dict[str, Any]] = []
        self.promo_codes: Dict[str, Dict[str, Any]] = {}
        self.usages: List[Dict[str, Any]] = []
        self.memberships: Dict[str, Dict[str, Any]] = {}

        # Failure injection: method name -> exception to raise
        self.failures: Dict[str, Exception] = {}

        self.transactions_opened = 0
        self.rollbacks = 0
        self.locks: List[tuple] = []

    def fail_on(self, method: str, error: Optional[Exception] = None):
        self.failures[method] = error or ConnectionError(f"database connection lost in {method}")

    def check_failure(self, method: str):
        if method in self.failures:
            raise self.failures[method]

    @asynccontextmanager
    async def transaction(self):
        snapshot = {name: copy.deepcopy(getattr(self, name)) for name in self.TABLES}
        self.transactions_opened += 1
        conn = f"conn_{self.transactions_opened}"
        try:
            yield conn
        except BaseException:
            for name, table in snapshot.items():
                setattr(self, name, table)
            self.rollbacks += 1
            raise


# =============================================================================
# Mock Repository Implementations
# =============================================================================


class MockCreditRepository:
    """Mock implementation of CreditRepositoryProtocol"""

    def __init__(self, db: MockLedgerDatabase):
        self.db = db
        self.method_calls = []

    def transaction(self):
        return self.db.transaction()

    def _live_row(self, user_id: str) -> Optional[Dict[str, Any]]:
        for row in self.db.credits.values():
            if row["user_id"] == user_id and row["deleted_at"] is None:
                return row
        return None

    async def get_credits_by_user_id(
        self, user_id: str, conn: Any = None, for_update: bool = False
    ) -> Optional[CreditBalance]:
        self.method_calls.append(("get_credits_by_user_id", user_id, for_update))
        self.db.check_failure("get_credits_by_user_id")
        if for_update:
            self.db.locks.append(("credits", user_id))
        row = self._live_row(user_id)
        return CreditBalance(**row) if row else None

    async def create_credits(
        self, user_id: str, amount_demand: int = 0, amount_sub: int = 0, conn: Any = None
    ) -> CreditBalance:
        self.method_calls.append(("create_credits", user_id, amount_demand, amount_sub))
        self.db.check_failure("create_credits")
        if self._live_row(user_id):
            raise RuntimeError("duplicate key value violates unique constraint")
        row = {
            "credits_id": CreditTestDataFactory.make_credits_id(),
            "user_id": user_id,
            "amount_demand": amount_demand,
            "amount_sub": amount_sub,
            "deleted_at": None,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.db.credits[row["credits_id"]] = row
        return CreditBalance(**row)

    async def update_credits_amounts(
        self, credits_id: str, amount_demand: int, amount_sub: int, conn: Any = None
    ) -> CreditBalance:
        self.method_calls.append(("update_credits_amounts", credits_id, amount_demand, amount_sub))
        self.db.check_failure("update_credits_amounts")
        if amount_demand < 0 or amount_sub < 0:
            raise RuntimeError("new row violates check constraint")
        row = self.db.credits[credits_id]
        row.update(amount_demand=amount_demand, amount_sub=amount_sub, updated_at=_now())
        return CreditBalance(**row)

    async def soft_delete_credits(self, credits_id: str, conn: Any = None) -> bool:
        self.method_calls.append(("soft_delete_credits", credits_id))
        row = self.db.credits.get(credits_id)
        if not row or row["deleted_at"] is not None:
            return False
        row["deleted_at"] = _now()
        return True

    async def create_history_entry(self, entry_data: Dict[str, Any], conn: Any = None) -> CreditHistoryEntry:
        self.method_calls.append(("create_history_entry", entry_data))
        self.db.check_failure("create_history_entry")
        row = {"history_id": CreditTestDataFactory.make_history_id(), "created_at": _now(), **entry_data}
        self.db.history.append(row)
        return CreditHistoryEntry(**row)

    async def get_history_by_user_id(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[CreditHistoryEntry]:
        self.method_calls.append(("get_history_by_user_id", user_id, limit, offset))
        rows = [row for row in reversed(self.db.history) if row["user_id"] == user_id]
        return [CreditHistoryEntry(**row) for row in rows[offset:offset + limit]]

    async def has_history_for_transaction(self, user_id: str, transaction_id: str, conn: Any = None) -> bool:
        self.method_calls.append(("has_history_for_transaction", user_id, transaction_id))
        return any(
            row["user_id"] == user_id and row.get("transaction_id") == transaction_id
            for row in self.db.history
        )

    # Test helpers

    def seed(self, user_id: str, amount_demand: int = 0, amount_sub: int = 0) -> CreditBalance:
        row = {
            "credits_id": CreditTestDataFactory.make_credits_id(),
            "user_id": user_id,
            "amount_demand": amount_demand,
            "amount_sub": amount_sub,
            "deleted_at": None,
            "created_at": _now(),
            "updated_at": _now(),
        }
        self.db.credits[row["credits_id"]] = row
        return CreditBalance(**row)

    def balance_of(self, user_id: str) -> Optional[Dict[str, int]]:
        row = self._live_row(user_id)
        if row is None:
            return None
        return {"demand": row["amount_demand"], "sub": row["amount_sub"]}

    def history_for(self, user_id: str) -> List[Dict[str, Any]]:
        return [row for row in self.db.history if row["user_id"] == user_id]


class MockPromoCodeRepository:
    """Mock implementation of PromoCodeRepositoryProtocol"""

    def __init__(self, db: MockLedgerDatabase):
        self.db = db
        self.method_calls = []

    def transaction(self):
        return self.db.transaction()

    async def get_promo_code_by_id(
        self, promo_code_id: str, conn: Any = None, for_update: bool = False
    ) -> Optional[PromoCode]:
        self.method_calls.append(("get_promo_code_by_id", promo_code_id, for_update))
        if for_update:
            self.db.locks.append(("promo_codes", promo_code_id))
        row = self.db.promo_codes.get(promo_code_id)
        return PromoCode(**row) if row else None

    async def get_promo_code_by_code(
        self, code: str, conn: Any = None, for_update: bool = False
    ) -> Optional[PromoCode]:
        self.method_calls.append(("get_promo_code_by_code", code, for_update))
        if for_update:
            self.db.locks.append(("promo_codes", code))
        for row in self.db.promo_codes.values():
            if row["code"] == code:
                return PromoCode(**row)
        return None

    async def list_promo_codes(self, active_only: bool = False) -> List[PromoCode]:
        self.method_calls.append(("list_promo_codes", active_only))
        rows = list(self.db.promo_codes.values())
        if active_only:
            rows = [
                row for row in rows
                if row["active"] and row["cancelled_at"] is None and row["expiration_date"] > _now()
            ]
        return [PromoCode(**row) for row in rows]

    async def create_promo_code(self, promo_data: Dict[str, Any]) -> PromoCode:
        self.method_calls.append(("create_promo_code", promo_data))
        row = {
            "promo_code_id": CreditTestDataFactory.make_promo_code_id(),
            "active": True,
            "cancelled_at": None,
            "created_by": None,
            "created_at": _now(),
            "updated_at": _now(),
            **promo_data,
        }
        self.db.promo_codes[row["promo_code_id"]] = row
        return PromoCode(**row)

    async def update_promo_code(
        self, promo_code_id: str, update_data: Dict[str, Any], conn: Any = None
    ) -> Optional[PromoCode]:
        self.method_calls.append(("update_promo_code", promo_code_id, update_data))
        row = self.db.promo_codes.get(promo_code_id)
        if row is None:
            return None
        row.update(update_data, updated_at=_now())
        return PromoCode(**row)

    async def delete_promo_code(self, promo_code_id: str, conn: Any = None) -> bool:
        self.method_calls.append(("delete_promo_code", promo_code_id))
        return self.db.promo_codes.pop(promo_code_id, None) is not None

    async def decrement_amount_available(self, promo_code_id: str, conn: Any = None) -> Optional[PromoCode]:
        self.method_calls.append(("decrement_amount_available", promo_code_id))
        self.db.check_failure("decrement_amount_available")
        row = self.db.promo_codes[promo_code_id]
        if row["amount_available"] <= 0:
            return None
        row["amount_available"] -= 1
        return PromoCode(**row)

    async def create_usage(self, usage_data: Dict[str, Any], conn: Any = None) -> PromoCodeUsage:
        self.method_calls.append(("create_usage", usage_data))
        self.db.check_failure("create_usage")
        row = {
            "usage_id": CreditTestDataFactory.make_usage_id(),
            "transaction_id": None,
            "used_at": _now(),
            **usage_data,
        }
        self.db.usages.append(row)
        return PromoCodeUsage(**row)

    async def get_user_usage(
        self, promo_code_id: str, user_id: str, conn: Any = None
    ) -> Optional[PromoCodeUsage]:
        for row in self.db.usages:
            if row["promo_code_id"] == promo_code_id and row["user_id"] == user_id:
                return PromoCodeUsage(**row)
        return None

    async def count_usages(self, promo_code_id: str, conn: Any = None) -> int:
        return sum(1 for row in self.db.usages if row["promo_code_id"] == promo_code_id)

    async def get_usages_by_promo_code_id(self, promo_code_id: str) -> List[PromoCodeUsage]:
        return [PromoCodeUsage(**row) for row in self.db.usages if row["promo_code_id"] == promo_code_id]

    async def get_usages_by_user_id(self, user_id: str) -> List[PromoCodeUsage]:
        return [PromoCodeUsage(**row) for row in self.db.usages if row["user_id"] == user_id]

    # Test helpers

    def seed(self, code: Optional[str] = None, **overrides) -> PromoCode:
        """Insert a promo code directly, bypassing admin validation"""
        row = {
            "promo_code_id": CreditTestDataFactory.make_promo_code_id(),
            "code": code or CreditTestDataFactory.make_code(),
            "discount": 10,
            "allowed_times": 5,
            "amount_available": 5,
            "expiration_date": CreditTestDataFactory.make_future_date(),
            "active": True,
            "cancelled_at": None,
            "created_by": "admin_1",
            "created_at": _now(),
            "updated_at": _now(),
        }
        row.update(overrides)
        self.db.promo_codes[row["promo_code_id"]] = row
        return PromoCode(**row)

    def row(self, promo_code_id: str) -> Dict[str, Any]:
        return self.db.promo_codes[promo_code_id]


class MockMembershipRepository:
    """Mock implementation of MembershipRepositoryProtocol"""

    def __init__(self, db: MockLedgerDatabase):
        self.db = db
        self.method_calls = []

    def _find(self, field: str, value: Any) -> Optional[Membership]:
        for row in self.db.memberships.values():
            if value is not None and row.get(field) == value:
                return Membership(**row)
        return None

    async def create_membership(self, membership_data: Dict[str, Any]) -> Membership:
        self.method_calls.append(("create_membership", membership_data))
        row = {
            "membership_id": CreditTestDataFactory.make_membership_id(),
            "stripe_customer_id": None,
            "stripe_subscription_id": None,
            "subscription_status": "inactive",
            "plan_type": "basic",
            "active": True,
            "last_payment_date": None,
            "created_at": _now(),
            "updated_at": _now(),
        }
        row.update({key: _plain(value) for key, value in membership_data.items()})
        self.db.memberships[row["membership_id"]] = row
        return Membership(**row)

    async def get_membership_by_id(self, membership_id: str) -> Optional[Membership]:
        return self._find("membership_id", membership_id)

    async def get_membership_by_user_id(self, user_id: str) -> Optional[Membership]:
        return self._find("user_id", user_id)

    async def get_membership_by_customer_id(self, stripe_customer_id: str) -> Optional[Membership]:
        return self._find("stripe_customer_id", stripe_customer_id)

    async def get_membership_by_subscription_id(self, stripe_subscription_id: str) -> Optional[Membership]:
        return self._find("stripe_subscription_id", stripe_subscription_id)

    async def update_membership(self, membership_id: str, update_data: Dict[str, Any]) -> Optional[Membership]:
        self.method_calls.append(("update_membership", membership_id, update_data))
        row = self.db.memberships.get(membership_id)
        if row is None:
            return None
        row.update({key: _plain(value) for key, value in update_data.items()}, updated_at=_now())
        return Membership(**row)

    async def delete_membership(self, membership_id: str) -> bool:
        self.method_calls.append(("delete_membership", membership_id))
        return self.db.memberships.pop(membership_id, None) is not None


class MockCreditPackRepository:
    """Mock implementation of CreditPackRepositoryProtocol"""

    def __init__(self):
        self.packs: Dict[str, Dict[str, Any]] = {}
        self.method_calls = []

    async def get_all_credit_packs(self) -> List[CreditPack]:
        self.method_calls.append(("get_all_credit_packs",))
        rows = sorted(self.packs.values(), key=lambda row: row["created_at"], reverse=True)
        rows.sort(key=lambda row: not row["active"])
        return [CreditPack(**row) for row in rows]

    async def get_active_credit_packs(self) -> List[CreditPack]:
        self.method_calls.append(("get_active_credit_packs",))
        rows = sorted((row for row in self.packs.values() if row["active"]), key=lambda row: row["amount"])
        return [CreditPack(**row) for row in rows]

    async def get_credit_pack_by_id(self, pack_id: str) -> Optional[CreditPack]:
        self.method_calls.append(("get_credit_pack_by_id", pack_id))
        row = self.packs.get(pack_id)
        return CreditPack(**row) if row else None

    async def create_credit_pack(self, pack_data: Dict[str, Any]) -> CreditPack:
        self.method_calls.append(("create_credit_pack", pack_data))
        row = {"pack_id": CreditTestDataFactory.make_pack_id(), "created_at": _now(), "updated_at": _now(), **pack_data}
        self.packs[row["pack_id"]] = row
        return CreditPack(**row)

    async def update_credit_pack(self, pack_id: str, update_data: Dict[str, Any]) -> Optional[CreditPack]:
        self.method_calls.append(("update_credit_pack", pack_id, update_data))
        row = self.packs.get(pack_id)
        if row is None:
            return None
        row.update(update_data, updated_at=_now())
        return CreditPack(**row)

    async def delete_credit_pack(self, pack_id: str) -> bool:
        self.method_calls.append(("delete_credit_pack", pack_id))
        return self.packs.pop(pack_id, None) is not None

    # Test helpers

    def seed(self, **overrides) -> CreditPack:
        row = {
            "pack_id": CreditTestDataFactory.make_pack_id(),
            "type": "starter",
            "amount": 5,
            "frequency": 1,
            "price": 110.0,
            "active": True,
            "created_by": "admin_1",
            "created_at": _now(),
            "updated_at": _now(),
        }
        row.update(overrides)
        self.packs[row["pack_id"]] = row
        return CreditPack(**row)


# =============================================================================
# Mock Event Bus and Cache
# =============================================================================


class MockEventBus:
    """Mock event bus for testing"""

    def __init__(self):
        self.published_events = []
        self.fail = False

    def reset(self):
        """Reset published events"""
        self.published_events.clear()

    async def publish_event(self, event) -> bool:
        """Publish event"""
        if self.fail:
            raise ConnectionError("NATS unavailable")
        self.published_events.append(event)
        return True

    def get_events_by_type(self, event_type: str) -> List[Any]:
        """Get all events of a type"""
        return [event for event in self.published_events if event.type == event_type]

    def event_published(self, event_type: str) -> bool:
        """Check if event was published"""
        return any(event.type == event_type for event in self.published_events)


class MockCache:
    """In-memory cache implementing CacheProtocol"""

    def __init__(self):
        self.store: Dict[str, Any] = {}
        self.deleted: List[str] = []
        self.fail_deletes = False

    async def get_json(self, key: str) -> Optional[Any]:
        return copy.deepcopy(self.store.get(key))

    async def set_json(self, key: str, value: Any, ttl_seconds: int) -> bool:
        self.store[key] = copy.deepcopy(value)
        return True

    async def delete(self, *keys: str) -> bool:
        if self.fail_deletes:
            raise ConnectionError("Redis unavailable")
        for key in keys:
            self.deleted.append(key)
            self.store.pop(key, None)
        return True

    async def incr(self, key: str, ttl_seconds: int) -> Optional[int]:
        if self.fail_deletes:
            raise ConnectionError("Redis unavailable")
        self.store[key] = int(self.store.get(key) or 0) + 1
        return self.store[key]


# =============================================================================
# Mock Payment Gateway
# =============================================================================


class MockPaymentGateway:
    """Scriptable implementation of PaymentGatewayProtocol"""

    def __init__(self):
        self.method_calls = []
        self.confirm_error: Optional[Exception] = None
        self.confirm_delay: float = 0
        self.cancelled_payments: List[str] = []
        self.cancelled_subscriptions: List[str] = []
        self.webhook_event: Optional[Dict[str, Any]] = None

    async def confirm_payment(
        self,
        amount: float,
        metadata: Dict[str, Any],
        payment_method: Optional[str] = None,
        customer: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        options = {"payment_method": payment_method, "customer": customer, "idempotency_key": idempotency_key}
        self.method_calls.append(("confirm_payment", amount, metadata, options))
        if self.confirm_delay:
            await asyncio.sleep(self.confirm_delay)
        if self.confirm_error:
            raise self.confirm_error
        return {"payment_intent_id": CreditTestDataFactory.make_payment_intent_id()}

    async def cancel_payment(self, payment_intent_id: str) -> bool:
        self.method_calls.append(("cancel_payment", payment_intent_id))
        self.cancelled_payments.append(payment_intent_id)
        return True

    async def create_customer(self, email: str, name: str, metadata: Dict[str, Any]) -> Dict[str, Any]:
        self.method_calls.append(("create_customer", email, name, metadata))
        return {"id": CreditTestDataFactory.make_customer_id(), "email": email}

    async def create_subscription(
        self, customer_id: str, price_id: str, metadata: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.method_calls.append(("create_subscription", customer_id, price_id, metadata))
        return {"id": CreditTestDataFactory.make_subscription_id(), "status": "active"}

    async def cancel_subscription(self, subscription_id: str) -> Dict[str, Any]:
        self.method_calls.append(("cancel_subscription", subscription_id))
        self.cancelled_subscriptions.append(subscription_id)
        return {"id": subscription_id, "status": "canceled"}

    def construct_webhook_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        self.method_calls.append(("construct_webhook_event", signature))
        if signature != "valid-signature":
            from microservices.credit_service.protocols import ValidationError
            raise ValidationError({"signature": ["Invalid webhook signature"]})
        return self.webhook_event


# =============================================================================
# Pytest Fixtures
# =============================================================================


@pytest.fixture
def mock_db():
    """Create shared in-memory database"""
    return MockLedgerDatabase()


@pytest.fixture
def mock_repository(mock_db):
    """Create mock credit repository"""
    return MockCreditRepository(mock_db)


@pytest.fixture
def mock_promo_repository(mock_db):
    """Create mock promo code repository"""
    return MockPromoCodeRepository(mock_db)


@pytest.fixture
def mock_membership_repository(mock_db):
    """Create mock membership repository"""
    return MockMembershipRepository(mock_db)


@pytest.fixture
def mock_pack_repository():
    """Create mock credit pack repository"""
    return MockCreditPackRepository()


@pytest.fixture
def mock_event_bus():
    """Create mock event bus"""
    return MockEventBus()


@pytest.fixture
def mock_cache():
    """Create mock cache"""
    return MockCache()


@pytest.fixture
def mock_gateway():
    """Create mock payment gateway"""
    return MockPaymentGateway()


@pytest.fixture
def service_config():
    from core.config import ServiceConfig

    return ServiceConfig(gateway_timeout_seconds=0.2)


@pytest.fixture
def promo_code_service(mock_promo_repository, mock_event_bus):
    """Create promo code service with mocked dependencies"""
    from microservices.credit_service.promo_code_service import PromoCodeService

    return PromoCodeService(mock_promo_repository, event_bus=mock_event_bus)


@pytest.fixture
def credit_pack_service(mock_pack_repository, mock_cache):
    """Create credit pack service with mocked dependencies"""
    from microservices.credit_service.credit_pack_service import CreditPackService

    return CreditPackService(mock_pack_repository, cache=mock_cache)


@pytest.fixture
def ledger(mock_repository):
    from microservices.credit_service.ledger import CreditLedger

    return CreditLedger(mock_repository)


@pytest.fixture
def transaction_service(
    mock_repository, ledger, promo_code_service, mock_gateway, mock_membership_repository, service_config
):
    """Create transaction orchestrator with mocked dependencies"""
    from microservices.credit_service.transaction_service import TransactionService
    from microservices.credit_service.transfer_coordinator import CreditTransferCoordinator

    return TransactionService(
        credit_repository=mock_repository,
        ledger=ledger,
        promo_code_service=promo_code_service,
        transfer_coordinator=CreditTransferCoordinator(ledger, service_config.member_transfer_limit),
        payment_gateway=mock_gateway,
        gateway_timeout_seconds=service_config.gateway_timeout_seconds,
        membership_repository=mock_membership_repository,
    )


@pytest.fixture
def credit_service(
    mock_repository,
    ledger,
    promo_code_service,
    transaction_service,
    credit_pack_service,
    mock_cache,
    mock_event_bus,
    service_config,
):
    """Create credit service with mocked dependencies"""
    from microservices.credit_service.credit_service import CreditService

    return CreditService(
        repository=mock_repository,
        ledger=ledger,
        promo_code_service=promo_code_service,
        transaction_service=transaction_service,
        cache=mock_cache,
        event_bus=mock_event_bus,
        config=service_config,
        credit_pack_service=credit_pack_service,
    )


@pytest.fixture
def membership_service(mock_membership_repository, mock_gateway, credit_service, mock_event_bus, service_config):
    """Create membership service with mocked dependencies"""
    from microservices.credit_service.membership_service import MembershipService

    return MembershipService(
        repository=mock_membership_repository,
        payment_gateway=mock_gateway,
        credit_service=credit_service,
        event_bus=mock_event_bus,
        config=service_config,
    )


@pytest.fixture
def data_factory():
    """Provide data factory for test data generation"""
    return CreditTestDataFactory
