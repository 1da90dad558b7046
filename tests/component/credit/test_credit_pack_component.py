"""
Credit Pack Component Tests

Tests CreditPackService with an in-memory catalog and cache.

Coverage:
1. Catalog reads and caching
2. Admin create/update/delete
3. Activate/deactivate

Usage:
    pytest tests/component/credit/test_credit_pack_component.py -v
"""

import pytest

from microservices.credit_service.credit_pack_service import ACTIVE_PACKS_KEY, ALL_PACKS_KEY, pack_key
from microservices.credit_service.protocols import (
    BusinessRuleViolation,
    ResourceNotFound,
    ValidationError,
)


# =============================================================================
# 1. Catalog Reads
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestCreditPackCatalog:

    async def test_active_packs_smallest_first(self, credit_pack_service, mock_pack_repository):
        mock_pack_repository.seed(type="premium", amount=20)
        mock_pack_repository.seed(type="single", amount=1)
        mock_pack_repository.seed(type="retired", amount=5, active=False)

        packs = await credit_pack_service.get_active_credit_packs()

        assert [pack.type for pack in packs] == ["single", "premium"]

    async def test_all_packs_active_first(self, credit_pack_service, mock_pack_repository):
        mock_pack_repository.seed(type="retired", active=False)
        mock_pack_repository.seed(type="starter")

        packs = await credit_pack_service.get_all_credit_packs()

        assert [pack.active for pack in packs] == [True, False]

    async def test_list_served_from_cache(self, credit_pack_service, mock_pack_repository, mock_cache):
        mock_pack_repository.seed()
        await credit_pack_service.get_active_credit_packs()
        mock_pack_repository.method_calls.clear()

        packs = await credit_pack_service.get_active_credit_packs()

        assert len(packs) == 1
        assert ACTIVE_PACKS_KEY in mock_cache.store
        assert mock_pack_repository.method_calls == []

    async def test_get_missing_pack(self, credit_pack_service):
        with pytest.raises(ResourceNotFound):
            await credit_pack_service.get_credit_pack("pack_missing")

    async def test_get_pack_cached(self, credit_pack_service, mock_pack_repository, mock_cache):
        pack = mock_pack_repository.seed(amount=10, price=200.0)

        fetched = await credit_pack_service.get_credit_pack(pack.pack_id)

        assert fetched.price == 200.0
        assert pack_key(pack.pack_id) in mock_cache.store


# =============================================================================
# 2. Admin Operations
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestCreditPackAdmin:

    async def test_create(self, credit_pack_service, mock_pack_repository):
        pack = await credit_pack_service.create_credit_pack("standard", 10, 200.0, created_by="admin_1")

        assert pack.pack_id.startswith("pack_")
        assert pack.active is True
        assert pack.frequency == 1
        assert pack.created_by == "admin_1"

    async def test_create_clears_list_caches(self, credit_pack_service, mock_pack_repository, mock_cache):
        await credit_pack_service.get_active_credit_packs()
        await credit_pack_service.get_all_credit_packs()

        await credit_pack_service.create_credit_pack("standard", 10, 200.0)

        assert ACTIVE_PACKS_KEY not in mock_cache.store
        assert ALL_PACKS_KEY not in mock_cache.store
        assert len(await credit_pack_service.get_active_credit_packs()) == 1

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"type": " "}, "type"),
            ({"amount": 0}, "amount"),
            ({"amount": 1.5}, "amount"),
            ({"price": -10}, "price"),
            ({"frequency": 0}, "frequency"),
        ],
    )
    async def test_create_validation(self, credit_pack_service, overrides, field):
        data = {"type": "standard", "amount": 10, "price": 200.0, **overrides}

        with pytest.raises(ValidationError) as exc_info:
            await credit_pack_service.create_credit_pack(**data)

        assert field in exc_info.value.errors

    async def test_update(self, credit_pack_service, mock_pack_repository, mock_cache):
        pack = mock_pack_repository.seed(price=110.0)
        await credit_pack_service.get_credit_pack(pack.pack_id)

        updated = await credit_pack_service.update_credit_pack(pack.pack_id, {"price": 99.0, "type": None})

        assert updated.price == 99.0
        assert updated.type == pack.type
        assert pack_key(pack.pack_id) not in mock_cache.store

    async def test_update_empty(self, credit_pack_service, mock_pack_repository):
        pack = mock_pack_repository.seed()

        with pytest.raises(ValidationError, match="At least one field must be provided"):
            await credit_pack_service.update_credit_pack(pack.pack_id, {"price": None})

    async def test_update_missing(self, credit_pack_service):
        with pytest.raises(ResourceNotFound):
            await credit_pack_service.update_credit_pack("pack_missing", {"price": 10.0})

    async def test_delete(self, credit_pack_service, mock_pack_repository):
        pack = mock_pack_repository.seed()

        assert await credit_pack_service.delete_credit_pack(pack.pack_id) is True
        with pytest.raises(ResourceNotFound):
            await credit_pack_service.get_credit_pack(pack.pack_id)


# =============================================================================
# 3. Activation
# =============================================================================


@pytest.mark.component
@pytest.mark.asyncio
class TestCreditPackActivation:

    async def test_deactivate_then_activate(self, credit_pack_service, mock_pack_repository):
        pack = mock_pack_repository.seed()

        deactivated = await credit_pack_service.deactivate_credit_pack(pack.pack_id)
        activated = await credit_pack_service.activate_credit_pack(pack.pack_id)

        assert deactivated.active is False
        assert activated.active is True

    async def test_deactivate_inactive(self, credit_pack_service, mock_pack_repository):
        pack = mock_pack_repository.seed(active=False)

        with pytest.raises(BusinessRuleViolation, match="Credit pack already inactive") as exc_info:
            await credit_pack_service.deactivate_credit_pack(pack.pack_id)

        assert exc_info.value.details == "Cannot deactivate an already inactive credit pack"

    async def test_activate_active(self, credit_pack_service, mock_pack_repository):
        pack = mock_pack_repository.seed()

        with pytest.raises(BusinessRuleViolation, match="Credit pack already active"):
            await credit_pack_service.activate_credit_pack(pack.pack_id)

    async def test_deactivated_pack_leaves_active_list(self, credit_pack_service, mock_pack_repository):
        pack = mock_pack_repository.seed()
        assert len(await credit_pack_service.get_active_credit_packs()) == 1

        await credit_pack_service.deactivate_credit_pack(pack.pack_id)

        assert await credit_pack_service.get_active_credit_packs() == []
