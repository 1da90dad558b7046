"""
Membership Data Repository

Data access layer - PostgreSQL (asyncpg)
Implements MembershipRepositoryProtocol from protocols.py
"""

import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from core.postgres_client import PostgresClientWrapper

from .models import Membership

logger = logging.getLogger(__name__)


class MembershipRepository:
    """Memberships - PostgreSQL (Async)"""

    UPDATABLE_FIELDS = (
        "stripe_customer_id", "stripe_subscription_id", "subscription_status",
        "plan_type", "active", "last_payment_date",
    )

    def __init__(self, db: Optional[PostgresClientWrapper] = None, schema: str = "credit"):
        self.db = db or PostgresClientWrapper(service_name="credit_service")
        self.schema = schema
        self.memberships_table = "memberships"

    # ====================
    # Membership CRUD
    # ====================

    async def create_membership(self, membership_data: Dict[str, Any]) -> Membership:
        """Create new membership"""
        try:
            membership_id = f"mem_{uuid.uuid4().hex[:16]}"
            now = datetime.now(timezone.utc)

            query = f'''
                INSERT INTO {self.schema}.{self.memberships_table} (
                    membership_id, user_id, stripe_customer_id, stripe_subscription_id,
                    subscription_status, plan_type, active, last_payment_date,
                    created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                RETURNING *
            '''
            params = [
                membership_id,
                membership_data["user_id"],
                membership_data.get("stripe_customer_id"),
                membership_data.get("stripe_subscription_id"),
                self._value(membership_data.get("subscription_status", "inactive")),
                self._value(membership_data.get("plan_type", "basic")),
                membership_data.get("active", True),
                membership_data.get("last_payment_date"),
                now,
                now,
            ]
            row = await self.db.query_row(query, params)
            logger.info(f"Created membership {membership_id} for user {membership_data['user_id']}")
            return self._row_to_membership(row)

        except Exception as e:
            logger.error(f"Error creating membership for user {membership_data.get('user_id')}: {e}")
            raise

    async def get_membership_by_id(self, membership_id: str) -> Optional[Membership]:
        return await self._get_one("membership_id", membership_id)

    async def get_membership_by_user_id(self, user_id: str) -> Optional[Membership]:
        return await self._get_one("user_id", user_id)

    async def get_membership_by_customer_id(self, stripe_customer_id: str) -> Optional[Membership]:
        return await self._get_one("stripe_customer_id", stripe_customer_id)

    async def get_membership_by_subscription_id(self, stripe_subscription_id: str) -> Optional[Membership]:
        return await self._get_one("stripe_subscription_id", stripe_subscription_id)

    async def update_membership(self, membership_id: str, update_data: Dict[str, Any]) -> Optional[Membership]:
        """Update the given membership fields"""
        try:
            fields = [f for f in self.UPDATABLE_FIELDS if f in update_data]
            if not fields:
                return await self.get_membership_by_id(membership_id)

            assignments = [f"{field} = ${i + 2}" for i, field in enumerate(fields)]
            assignments.append(f"updated_at = ${len(fields) + 2}")
            params = [membership_id] + [self._value(update_data[f]) for f in fields]
            params.append(datetime.now(timezone.utc))

            query = f'''
                UPDATE {self.schema}.{self.memberships_table}
                SET {", ".join(assignments)}
                WHERE membership_id = $1
                RETURNING *
            '''
            row = await self.db.query_row(query, params)
            return self._row_to_membership(row) if row else None

        except Exception as e:
            logger.error(f"Error updating membership {membership_id}: {e}")
            raise

    async def delete_membership(self, membership_id: str) -> bool:
        try:
            query = f'DELETE FROM {self.schema}.{self.memberships_table} WHERE membership_id = $1'
            count = await self.db.execute(query, [membership_id])
            return count > 0

        except Exception as e:
            logger.error(f"Error deleting membership {membership_id}: {e}")
            raise

    # ====================
    # Helpers
    # ====================

    async def _get_one(self, column: str, value: str) -> Optional[Membership]:
        try:
            query = f'SELECT * FROM {self.schema}.{self.memberships_table} WHERE {column} = $1'
            row = await self.db.query_row(query, [value])
            return self._row_to_membership(row) if row else None

        except Exception as e:
            logger.error(f"Error getting membership by {column}={value}: {e}")
            raise

    @staticmethod
    def _value(value: Any) -> Any:
        return value.value if isinstance(value, Enum) else value

    def _row_to_membership(self, row: Dict[str, Any]) -> Membership:
        return Membership(
            membership_id=row["membership_id"],
            user_id=row["user_id"],
            stripe_customer_id=row.get("stripe_customer_id"),
            stripe_subscription_id=row.get("stripe_subscription_id"),
            subscription_status=row["subscription_status"],
            plan_type=row["plan_type"],
            active=row["active"],
            last_payment_date=row.get("last_payment_date"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


__all__ = ["MembershipRepository"]
