"""
Credit Service Data Repository

Data access layer - PostgreSQL (asyncpg)
Implements CreditRepositoryProtocol from protocols.py
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from core.postgres_client import PostgresClientWrapper

from .models import CreditBalance, CreditHistoryEntry

logger = logging.getLogger(__name__)


class CreditRepository:
    """Credit balances and history - PostgreSQL (Async)"""

    def __init__(self, db: Optional[PostgresClientWrapper] = None, schema: str = "credit"):
        self.db = db or PostgresClientWrapper(service_name="credit_service")
        self.schema = schema
        self.credits_table = "user_credits"
        self.history_table = "credit_history"

    async def initialize(self):
        """Initialize database connection"""
        await self.db.connect()
        logger.info("Credit repository initialized with PostgreSQL")

    async def close(self):
        """Close database connection"""
        await self.db.close()
        logger.info("Credit repository database connection closed")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        """Transaction scope; the yielded connection is passed as ``conn``"""
        async with self.db.transaction() as conn:
            yield conn

    # ====================
    # Balances
    # ====================

    async def get_credits_by_user_id(
        self, user_id: str, conn: Any = None, for_update: bool = False
    ) -> Optional[CreditBalance]:
        """Get the live balance of a user, optionally locking the row"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.credits_table}
                WHERE user_id = $1 AND deleted_at IS NULL
                {"FOR UPDATE" if for_update else ""}
            '''
            row = await self.db.query_row(query, [user_id], conn=conn)
            return self._row_to_credits(row) if row else None

        except Exception as e:
            logger.error(f"Error getting credits for user {user_id}: {e}")
            raise

    async def create_credits(
        self, user_id: str, amount_demand: int = 0, amount_sub: int = 0, conn: Any = None
    ) -> CreditBalance:
        """Insert a new balance row"""
        try:
            credits_id = f"cred_{uuid.uuid4().hex[:16]}"
            now = datetime.now(timezone.utc)

            query = f'''
                INSERT INTO {self.schema}.{self.credits_table} (
                    credits_id, user_id, amount_demand, amount_sub, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING *
            '''
            row = await self.db.query_row(
                query, [credits_id, user_id, amount_demand, amount_sub, now, now], conn=conn
            )
            logger.info(f"Created credit balance {credits_id} for user {user_id}")
            return self._row_to_credits(row)

        except Exception as e:
            logger.error(f"Error creating credits for user {user_id}: {e}")
            raise

    async def update_credits_amounts(
        self, credits_id: str, amount_demand: int, amount_sub: int, conn: Any = None
    ) -> CreditBalance:
        """Overwrite both buckets of a balance"""
        try:
            query = f'''
                UPDATE {self.schema}.{self.credits_table}
                SET amount_demand = $2, amount_sub = $3, updated_at = $4
                WHERE credits_id = $1
                RETURNING *
            '''
            row = await self.db.query_row(
                query, [credits_id, amount_demand, amount_sub, datetime.now(timezone.utc)], conn=conn
            )
            if row is None:
                raise LookupError(f"Balance {credits_id} disappeared during update")
            return self._row_to_credits(row)

        except Exception as e:
            logger.error(f"Error updating credits {credits_id}: {e}")
            raise

    async def soft_delete_credits(self, credits_id: str, conn: Any = None) -> bool:
        """Mark a balance as deleted"""
        try:
            now = datetime.now(timezone.utc)
            query = f'''
                UPDATE {self.schema}.{self.credits_table}
                SET deleted_at = $2, updated_at = $2
                WHERE credits_id = $1 AND deleted_at IS NULL
            '''
            count = await self.db.execute(query, [credits_id, now], conn=conn)
            return count > 0

        except Exception as e:
            logger.error(f"Error deleting credits {credits_id}: {e}")
            raise

    # ====================
    # History
    # ====================

    async def create_history_entry(self, entry_data: Dict[str, Any], conn: Any = None) -> CreditHistoryEntry:
        """Append a history entry"""
        try:
            history_id = f"chist_{uuid.uuid4().hex[:16]}"
            query = f'''
                INSERT INTO {self.schema}.{self.history_table} (
                    history_id, user_id, credits_id, amount, description,
                    operation, type, transaction_id, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                RETURNING *
            '''
            params = [
                history_id,
                entry_data["user_id"],
                entry_data["credits_id"],
                entry_data["amount"],
                entry_data["description"],
                entry_data["operation"],
                entry_data["type"],
                entry_data.get("transaction_id"),
                datetime.now(timezone.utc),
            ]
            row = await self.db.query_row(query, params, conn=conn)
            return self._row_to_history(row)

        except Exception as e:
            logger.error(f"Error creating history entry for user {entry_data.get('user_id')}: {e}")
            raise

    async def get_history_by_user_id(
        self, user_id: str, limit: int = 50, offset: int = 0
    ) -> List[CreditHistoryEntry]:
        """Get history entries for a user, newest first"""
        try:
            query = f'''
                SELECT * FROM {self.schema}.{self.history_table}
                WHERE user_id = $1
                ORDER BY created_at DESC
                LIMIT $2 OFFSET $3
            '''
            rows = await self.db.query(query, [user_id, limit, offset])
            return [self._row_to_history(row) for row in rows]

        except Exception as e:
            logger.error(f"Error getting credit history for user {user_id}: {e}")
            raise

    async def has_history_for_transaction(self, user_id: str, transaction_id: str, conn: Any = None) -> bool:
        """Whether a grant or purchase with this reference was already recorded"""
        try:
            query = f'''
                SELECT EXISTS (
                    SELECT 1 FROM {self.schema}.{self.history_table}
                    WHERE user_id = $1 AND transaction_id = $2
                ) AS recorded
            '''
            row = await self.db.query_row(query, [user_id, transaction_id], conn=conn)
            return bool(row and row["recorded"])

        except Exception as e:
            logger.error(f"Error checking history of user {user_id} for {transaction_id}: {e}")
            raise

    # ====================
    # Row Mapping
    # ====================

    def _row_to_credits(self, row: Dict[str, Any]) -> CreditBalance:
        return CreditBalance(
            credits_id=row["credits_id"],
            user_id=row["user_id"],
            amount_demand=row["amount_demand"],
            amount_sub=row["amount_sub"],
            deleted_at=row.get("deleted_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def _row_to_history(self, row: Dict[str, Any]) -> CreditHistoryEntry:
        return CreditHistoryEntry(
            history_id=row["history_id"],
            user_id=row["user_id"],
            credits_id=row["credits_id"],
            amount=row["amount"],
            description=row["description"],
            operation=row["operation"],
            type=row["type"],
            transaction_id=row.get("transaction_id"),
            created_at=row.get("created_at"),
        )


__all__ = ["CreditRepository"]
