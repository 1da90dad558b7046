"""
Credit Pack Service - Business Logic Layer

Admin-managed catalog of purchasable credit packs. A paid purchase that names
a pack takes its credit amount and price from the pack.

Reads go through the best-effort cache; every write clears the list caches
and the pack's own entry.
"""

import logging
from typing import Any, Dict, List, Optional

from .ledger import is_integer, raise_if_errors
from .models import CreditPack
from .protocols import (
    BusinessRuleViolation,
    CacheProtocol,
    CreditPackRepositoryProtocol,
    OperationFailedError,
    ResourceNotFound,
)

logger = logging.getLogger(__name__)

ALL_PACKS_KEY = "credit-packs:all"
ACTIVE_PACKS_KEY = "credit-packs:active"
LIST_TTL_SECONDS = 600
PACK_TTL_SECONDS = 300


def pack_key(pack_id: str) -> str:
    return f"credit-pack:{pack_id}"


class CreditPackService:
    """
    Credit Pack Service - Core business logic

    Handles:
    - Catalog reads (all packs for admins, active packs for buyers)
    - Admin create/update/delete and activate/deactivate
    """

    def __init__(
        self,
        repository: CreditPackRepositoryProtocol,
        cache: Optional[CacheProtocol] = None,
    ):
        self.repository = repository
        self.cache = cache

    # ====================
    # Cache
    # ====================

    async def _cached_list(self, key: str) -> Optional[List[CreditPack]]:
        if self.cache is None:
            return None
        cached = await self.cache.get_json(key)
        if cached is None:
            return None
        return [CreditPack.model_validate(item) for item in cached]

    async def _store(self, key: str, value: Any, ttl_seconds: int) -> None:
        if self.cache is not None:
            await self.cache.set_json(key, value, ttl_seconds)

    async def _clear_caches(self, pack_id: Optional[str] = None) -> None:
        if self.cache is None:
            return
        keys = [ALL_PACKS_KEY, ACTIVE_PACKS_KEY]
        if pack_id:
            keys.append(pack_key(pack_id))
        try:
            await self.cache.delete(*keys)
        except Exception as e:
            logger.warning(f"Failed to clear credit pack caches: {e}")

    # ====================
    # Validation
    # ====================

    @staticmethod
    def _check_fields(errors: Dict[str, List[str]], data: Dict[str, Any]) -> None:
        if "type" in data:
            pack_type = data["type"]
            if not isinstance(pack_type, str) or not pack_type.strip():
                errors.setdefault("type", []).append("Type is required and must be a string")
        for field, label in (("amount", "Amount"), ("frequency", "Frequency")):
            if field in data:
                value = data[field]
                if not is_integer(value) or value <= 0:
                    errors.setdefault(field, []).append(f"{label} must be a positive integer")
        if "price" in data:
            price = data["price"]
            if isinstance(price, bool) or not isinstance(price, (int, float)) or price <= 0:
                errors.setdefault("price", []).append("Price must be a positive number")
        if "active" in data and not isinstance(data["active"], bool):
            errors.setdefault("active", []).append("Active must be a boolean")

    # ====================
    # Queries
    # ====================

    async def get_all_credit_packs(self) -> List[CreditPack]:
        """Every pack, active first"""
        cached = await self._cached_list(ALL_PACKS_KEY)
        if cached is not None:
            return cached

        try:
            packs = await self.repository.get_all_credit_packs()
        except Exception as e:
            logger.error(f"Failed to list credit packs: {e}")
            raise OperationFailedError("get_all_credit_packs") from e

        await self._store(ALL_PACKS_KEY, [pack.model_dump(mode="json") for pack in packs], LIST_TTL_SECONDS)
        return packs

    async def get_active_credit_packs(self) -> List[CreditPack]:
        """Packs on sale, smallest first"""
        cached = await self._cached_list(ACTIVE_PACKS_KEY)
        if cached is not None:
            return cached

        try:
            packs = await self.repository.get_active_credit_packs()
        except Exception as e:
            logger.error(f"Failed to list active credit packs: {e}")
            raise OperationFailedError("get_active_credit_packs") from e

        await self._store(ACTIVE_PACKS_KEY, [pack.model_dump(mode="json") for pack in packs], LIST_TTL_SECONDS)
        return packs

    async def get_credit_pack(self, pack_id: str) -> CreditPack:
        """
        Raises:
            ResourceNotFound: If the pack does not exist
        """
        if self.cache is not None:
            cached = await self.cache.get_json(pack_key(pack_id))
            if cached:
                return CreditPack.model_validate(cached)

        try:
            pack = await self.repository.get_credit_pack_by_id(pack_id)
        except Exception as e:
            logger.error(f"Failed to get credit pack {pack_id}: {e}")
            raise OperationFailedError("get_credit_pack", pack_id=pack_id) from e
        if pack is None:
            raise ResourceNotFound("CreditPack", pack_id)

        await self._store(pack_key(pack_id), pack.model_dump(mode="json"), PACK_TTL_SECONDS)
        return pack

    async def get_purchasable_pack(self, pack_id: str) -> CreditPack:
        """A pack a buyer may purchase right now"""
        pack = await self.get_credit_pack(pack_id)
        if not pack.active:
            raise BusinessRuleViolation("Credit pack is not available", details={"pack_id": pack_id})
        return pack

    # ====================
    # Admin Operations
    # ====================

    async def create_credit_pack(
        self,
        type: str,
        amount: int,
        price: float,
        frequency: int = 1,
        active: bool = True,
        created_by: Optional[str] = None,
    ) -> CreditPack:
        """
        Create a pack.

        Raises:
            ValidationError: On malformed fields
        """
        data = {"type": type, "amount": amount, "price": price, "frequency": frequency, "active": active}
        errors: Dict[str, List[str]] = {}
        self._check_fields(errors, data)
        raise_if_errors(errors)

        data["created_by"] = created_by
        try:
            pack = await self.repository.create_credit_pack(data)
        except Exception as e:
            logger.error(f"Failed to create credit pack {type}: {e}")
            raise OperationFailedError("create_credit_pack", type=type) from e

        logger.info(f"Credit pack {pack.pack_id} created by {created_by} ({amount} credits for {price})")
        await self._clear_caches()
        return pack

    async def update_credit_pack(self, pack_id: str, update_data: Dict[str, Any]) -> CreditPack:
        """
        Raises:
            ValidationError: On malformed fields or an empty update
            ResourceNotFound: If the pack does not exist
        """
        data = {key: value for key, value in update_data.items() if value is not None}
        if not data:
            raise_if_errors({"update": ["At least one field must be provided"]})

        errors: Dict[str, List[str]] = {}
        self._check_fields(errors, data)
        raise_if_errors(errors)

        await self.get_credit_pack(pack_id)
        try:
            updated = await self.repository.update_credit_pack(pack_id, data)
        except Exception as e:
            logger.error(f"Failed to update credit pack {pack_id}: {e}")
            raise OperationFailedError("update_credit_pack", pack_id=pack_id) from e
        if updated is None:
            raise ResourceNotFound("CreditPack", pack_id)

        logger.info(f"Credit pack {pack_id} updated: {sorted(data)}")
        await self._clear_caches(pack_id)
        return updated

    async def delete_credit_pack(self, pack_id: str) -> bool:
        await self.get_credit_pack(pack_id)
        try:
            deleted = await self.repository.delete_credit_pack(pack_id)
        except Exception as e:
            logger.error(f"Failed to delete credit pack {pack_id}: {e}")
            raise OperationFailedError("delete_credit_pack", pack_id=pack_id) from e

        logger.info(f"Credit pack {pack_id} deleted")
        await self._clear_caches(pack_id)
        return deleted

    async def _set_active(self, pack_id: str, active: bool) -> CreditPack:
        pack = await self.repository.get_credit_pack_by_id(pack_id)
        if pack is None:
            raise ResourceNotFound("CreditPack", pack_id)
        if pack.active == active:
            state = "active" if active else "inactive"
            verb = "activate" if active else "deactivate"
            raise BusinessRuleViolation(
                f"Credit pack already {state}",
                details=f"Cannot {verb} an already {state} credit pack",
            )

        try:
            updated = await self.repository.update_credit_pack(pack_id, {"active": active})
        except Exception as e:
            logger.error(f"Failed to set credit pack {pack_id} active={active}: {e}")
            raise OperationFailedError("set_credit_pack_active", pack_id=pack_id, active=active) from e

        logger.info(f"Credit pack {pack_id} {'activated' if active else 'deactivated'}")
        await self._clear_caches(pack_id)
        return updated

    async def deactivate_credit_pack(self, pack_id: str) -> CreditPack:
        return await self._set_active(pack_id, False)

    async def activate_credit_pack(self, pack_id: str) -> CreditPack:
        return await self._set_active(pack_id, True)


__all__ = ["CreditPackService", "pack_key", "ALL_PACKS_KEY", "ACTIVE_PACKS_KEY"]
