"""
Credit Pack Data Repository

Data access layer - PostgreSQL (asyncpg)
Implements CreditPackRepositoryProtocol from protocols.py
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from core.postgres_client import PostgresClientWrapper

from .models import CreditPack

logger = logging.getLogger(__name__)


class CreditPackRepository:
    """Credit pack catalog - PostgreSQL (Async)"""

    UPDATABLE_FIELDS = ("type", "amount", "frequency", "price", "active")

    def __init__(self, db: Optional[PostgresClientWrapper] = None, schema: str = "credit"):
        self.db = db or PostgresClientWrapper(service_name="credit_service")
        self.schema = schema
        self.table = "credit_packs"

    async def get_all_credit_packs(self) -> List[CreditPack]:
        try:
            query = f'SELECT * FROM {self.schema}.{self.table} ORDER BY active DESC, created_at DESC'
            rows = await self.db.query(query)
            return [self._row_to_pack(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing credit packs: {e}")
            raise

    async def get_active_credit_packs(self) -> List[CreditPack]:
        try:
            query = f'SELECT * FROM {self.schema}.{self.table} WHERE active = TRUE ORDER BY amount ASC'
            rows = await self.db.query(query)
            return [self._row_to_pack(row) for row in rows]

        except Exception as e:
            logger.error(f"Error listing active credit packs: {e}")
            raise

    async def get_credit_pack_by_id(self, pack_id: str) -> Optional[CreditPack]:
        try:
            query = f'SELECT * FROM {self.schema}.{self.table} WHERE pack_id = $1'
            row = await self.db.query_row(query, [pack_id])
            return self._row_to_pack(row) if row else None

        except Exception as e:
            logger.error(f"Error getting credit pack {pack_id}: {e}")
            raise

    async def create_credit_pack(self, pack_data: Dict[str, Any]) -> CreditPack:
        try:
            pack_id = f"pack_{uuid.uuid4().hex[:16]}"
            now = datetime.now(timezone.utc)

            query = f'''
                INSERT INTO {self.schema}.{self.table} (
                    pack_id, type, amount, frequency, price, active, created_by, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING *
            '''
            params = [
                pack_id,
                pack_data["type"],
                pack_data["amount"],
                pack_data.get("frequency", 1),
                pack_data["price"],
                pack_data.get("active", True),
                pack_data.get("created_by"),
                now,
                now,
            ]
            row = await self.db.query_row(query, params)
            logger.info(f"Created credit pack {pack_data['type']} ({pack_id})")
            return self._row_to_pack(row)

        except Exception as e:
            logger.error(f"Error creating credit pack {pack_data.get('type')}: {e}")
            raise

    async def update_credit_pack(self, pack_id: str, update_data: Dict[str, Any]) -> Optional[CreditPack]:
        try:
            fields = [f for f in self.UPDATABLE_FIELDS if f in update_data]
            if not fields:
                return await self.get_credit_pack_by_id(pack_id)

            assignments = [f"{field} = ${i + 2}" for i, field in enumerate(fields)]
            assignments.append(f"updated_at = ${len(fields) + 2}")
            params = [pack_id] + [update_data[f] for f in fields] + [datetime.now(timezone.utc)]

            query = f'''
                UPDATE {self.schema}.{self.table}
                SET {", ".join(assignments)}
                WHERE pack_id = $1
                RETURNING *
            '''
            row = await self.db.query_row(query, params)
            return self._row_to_pack(row) if row else None

        except Exception as e:
            logger.error(f"Error updating credit pack {pack_id}: {e}")
            raise

    async def delete_credit_pack(self, pack_id: str) -> bool:
        try:
            query = f'DELETE FROM {self.schema}.{self.table} WHERE pack_id = $1'
            count = await self.db.execute(query, [pack_id])
            return count > 0

        except Exception as e:
            logger.error(f"Error deleting credit pack {pack_id}: {e}")
            raise

    def _row_to_pack(self, row: Dict[str, Any]) -> CreditPack:
        return CreditPack(
            pack_id=row["pack_id"],
            type=row["type"],
            amount=row["amount"],
            frequency=row["frequency"],
            # NUMERIC comes back as Decimal
            price=float(row["price"]),
            active=row["active"],
            created_by=row.get("created_by"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


__all__ = ["CreditPackRepository"]
