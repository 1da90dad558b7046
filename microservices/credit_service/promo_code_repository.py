"""
Promo Code Data Repository

Data access layer - PostgreSQL (asyncpg)
Implements PromoCodeRepositoryProtocol from protocols.py
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from core.postgres_client import PostgresClientWrapper

from .models import PromoCode, PromoCodeUsage

logger = logging.getLogger(__name__)


class PromoCodeRepository:
    """Promo codes and usages - PostgreSQL (Async)"""

    # Columns an update may touch
    UPDATABLE_FIELDS = (
        "code", "discount", "allowed_times", "amount_available",
        "expiration_date", "active", "cancelled_at",
    )

    def __init__(self, db: Optional[PostgresClientWrapper] = None, schema: str = "credit"):
        self.db = db or PostgresClientWrapper(service_name="credit_service")
        self.schema = schema
        self.promo_codes_table = "promo_codes"
        self.usages_table = "promo_code_usages"

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        async with self.db.transaction() as conn:
            yield conn

    # ====================
    # Promo Codes
    # ====================

    async def get_promo_code_by_id(
        self, promo_code_id: str, conn: Any = None, for_update: bool = False
    ) -> Optional[PromoCode]:
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.promo_codes_table}
                WHERE promo_code_id = $1
                {"FOR UPDATE" if for_update else ""}
            '''
            row = await self.db.query_row(query, [promo_code_id], conn=conn)
            return self._row_to_promo_code(row) if row else None

        except Exception as e:
            logger.error(f"Error getting promo code {promo_code_id}: {e}")
            raise

    async def get_promo_code_by_code(
        self, code: str, conn: Any = None, for_update: bool = False
    ) -> Optional[PromoCode]:
        """Get promo code by exact code, optionally locking the row"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.promo_codes_table}
                WHERE code = $1
                {"FOR UPDATE" if for_update else ""}
            '''
            row = await self.db.query_row(query, [code], conn=conn)
            return self._row_to_promo_code(row) if row else None

        except Exception as e:
            logger.error(f"Error getting promo code by code {code}: {e}")
            raise

    async def list_promo_codes(self, active_only: bool = False) -> List[PromoCode]:
        try:
            query = f'SELECT * FROM {self.schema}.{self.promo_codes_table}'
            if active_only:
                query += ' WHERE active = TRUE AND cancelled_at IS NULL AND expiration_date > NOW()'
            query += ' ORDER BY created_at DESC'
            rows = await self.db.query(query)
            return [self._row_to_promo_code(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing promo codes: {e}")
            raise

    async def create_promo_code(self, promo_data: Dict[str, Any]) -> PromoCode:
        try:
            promo_code_id = f"promo_{uuid.uuid4().hex[:16]}"
            now = datetime.now(timezone.utc)

            query = f'''
                INSERT INTO {self.schema}.{self.promo_codes_table} (
                    promo_code_id, code, discount, allowed_times, amount_available,
                    expiration_date, active, created_by, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING *
            '''
            params = [
                promo_code_id,
                promo_data["code"],
                promo_data["discount"],
                promo_data["allowed_times"],
                promo_data["amount_available"],
                promo_data["expiration_date"],
                promo_data.get("active", True),
                promo_data.get("created_by"),
                now,
                now,
            ]
            row = await self.db.query_row(query, params)
            logger.info(f"Created promo code {promo_data['code']} ({promo_code_id})")
            return self._row_to_promo_code(row)

        except Exception as e:
            logger.error(f"Error creating promo code {promo_data.get('code')}: {e}")
            raise

    async def update_promo_code(
        self, promo_code_id: str, update_data: Dict[str, Any], conn: Any = None
    ) -> Optional[PromoCode]:
        try:
            fields = [f for f in self.UPDATABLE_FIELDS if f in update_data]
            if not fields:
                return await self.get_promo_code_by_id(promo_code_id, conn=conn)

            assignments = [f"{field} = ${i + 2}" for i, field in enumerate(fields)]
            assignments.append(f"updated_at = ${len(fields) + 2}")
            params = [promo_code_id] + [update_data[f] for f in fields] + [datetime.now(timezone.utc)]

            query = f'''
                UPDATE {self.schema}.{self.promo_codes_table}
                SET {", ".join(assignments)}
                WHERE promo_code_id = $1
                RETURNING *
            '''
            row = await self.db.query_row(query, params, conn=conn)
            return self._row_to_promo_code(row) if row else None

        except Exception as e:
            logger.error(f"Error updating promo code {promo_code_id}: {e}")
            raise

    async def delete_promo_code(self, promo_code_id: str, conn: Any = None) -> bool:
        try:
            query = f'DELETE FROM {self.schema}.{self.promo_codes_table} WHERE promo_code_id = $1'
            count = await self.db.execute(query, [promo_code_id], conn=conn)
            return count > 0

        except Exception as e:
            logger.error(f"Error deleting promo code {promo_code_id}: {e}")
            raise

    async def decrement_amount_available(self, promo_code_id: str, conn: Any = None) -> Optional[PromoCode]:
        """Guarded decrement; None means the last redemption was already taken"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.promo_codes_table}
                SET amount_available = amount_available - 1, updated_at = $2
                WHERE promo_code_id = $1 AND amount_available > 0
                RETURNING *
            '''
            row = await self.db.query_row(query, [promo_code_id, datetime.now(timezone.utc)], conn=conn)
            return self._row_to_promo_code(row) if row else None

        except Exception as e:
            logger.error(f"Error decrementing promo code {promo_code_id}: {e}")
            raise

    # ====================
    # Usages
    # ====================

    async def create_usage(self, usage_data: Dict[str, Any], conn: Any = None) -> PromoCodeUsage:
        try:
            usage_id = f"pcu_{uuid.uuid4().hex[:16]}"
            query = f'''
                INSERT INTO {self.schema}.{self.usages_table} (
                    usage_id, promo_code_id, user_id, transaction_id, used_at
                ) VALUES ($1, $2, $3, $4, $5)
                RETURNING *
            '''
            params = [
                usage_id,
                usage_data["promo_code_id"],
                usage_data["user_id"],
                usage_data.get("transaction_id"),
                datetime.now(timezone.utc),
            ]
            row = await self.db.query_row(query, params, conn=conn)
            return self._row_to_usage(row)

        except Exception as e:
            logger.error(f"Error recording usage of promo code {usage_data.get('promo_code_id')}: {e}")
            raise

    async def get_user_usage(
        self, promo_code_id: str, user_id: str, conn: Any = None
    ) -> Optional[PromoCodeUsage]:
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.usages_table}
                WHERE promo_code_id = $1 AND user_id = $2
            '''
            row = await self.db.query_row(query, [promo_code_id, user_id], conn=conn)
            return self._row_to_usage(row) if row else None

        except Exception as e:
            logger.error(f"Error getting usage of {promo_code_id} by {user_id}: {e}")
            raise

    async def count_usages(self, promo_code_id: str, conn: Any = None) -> int:
        try:
            query = f'SELECT COUNT(*) AS count FROM {self.schema}.{self.usages_table} WHERE promo_code_id = $1'
            row = await self.db.query_row(query, [promo_code_id], conn=conn)
            return int(row["count"]) if row else 0

        except Exception as e:
            logger.error(f"Error counting usages of {promo_code_id}: {e}")
            raise

    async def get_usages_by_promo_code_id(self, promo_code_id: str) -> List[PromoCodeUsage]:
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.usages_table}
                WHERE promo_code_id = $1 ORDER BY used_at DESC
            '''
            rows = await self.db.query(query, [promo_code_id])
            return [self._row_to_usage(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing usages of {promo_code_id}: {e}")
            raise

    async def get_usages_by_user_id(self, user_id: str) -> List[PromoCodeUsage]:
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.usages_table}
                WHERE user_id = $1 ORDER BY used_at DESC
            '''
            rows = await self.db.query(query, [user_id])
            return [self._row_to_usage(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing promo code usages of user {user_id}: {e}")
            raise

    # ====================
    # Row Mapping
    # ====================

    def _row_to_promo_code(self, row: Dict[str, Any]) -> PromoCode:
        return PromoCode(
            promo_code_id=row["promo_code_id"],
            code=row["code"],
            discount=row["discount"],
            allowed_times=row["allowed_times"],
            amount_available=row["amount_available"],
            expiration_date=row["expiration_date"],
            active=row["active"],
            cancelled_at=row.get("cancelled_at"),
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_usage(self, row: Dict[str, Any]) -> PromoCodeUsage:
        return PromoCodeUsage(
            usage_id=row["usage_id"],
            promo_code_id=row["promo_code_id"],
            user_id=row["user_id"],
            transaction_id=row.get("transaction_id"),
            used_at=row.get("used_at"),
        )


__all__ = ["PromoCodeRepository"]
