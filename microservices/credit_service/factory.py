"""
Credit Service Factory

Factory for creating the credit services with real dependencies.
This is the ONLY module that imports concrete implementations.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from core.config import AppConfig, get_settings
from core.postgres_client import PostgresClientWrapper
from core.redis_client import RedisCache

from .credit_pack_repository import CreditPackRepository
from .credit_pack_service import CreditPackService
from .credit_repository import CreditRepository
from .credit_service import CreditService
from .ledger import CreditLedger
from .membership_repository import MembershipRepository
from .membership_service import MembershipService
from .promo_code_repository import PromoCodeRepository
from .promo_code_service import PromoCodeService
from .transaction_service import TransactionService
from .transfer_coordinator import CreditTransferCoordinator

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


@dataclass
class CreditServices:
    """Services sharing one database client"""

    credit_service: CreditService
    promo_code_service: PromoCodeService
    membership_service: MembershipService
    credit_pack_service: Optional[CreditPackService] = None
    db: Optional[PostgresClientWrapper] = None


def create_credit_service(
    settings: Optional[AppConfig] = None,
    event_bus=None,
    cache=None,
    payment_gateway=None,
    db: Optional[PostgresClientWrapper] = None,
) -> CreditServices:
    """
    Create the credit, promo code, credit pack and membership services with real dependencies

    All repositories share one PostgreSQL client so a single transaction can
    span balances, history and promo code usages.

    Args:
        settings: Optional app config (loaded from environment if not provided)
        event_bus: Optional event bus for event publishing
        cache: Optional balance cache (Redis when enabled)
        payment_gateway: Optional payment gateway (Stripe when a key is configured)
        db: Optional PostgreSQL client

    Returns:
        CreditServices bundle
    """
    settings = settings or get_settings()
    service_config = settings.service

    if db is None:
        db = PostgresClientWrapper(service_name=service_config.service_name, config=settings.infrastructure)

    credit_repository = CreditRepository(db=db, schema=service_config.db_schema)
    promo_code_repository = PromoCodeRepository(db=db, schema=service_config.db_schema)
    membership_repository = MembershipRepository(db=db, schema=service_config.db_schema)
    credit_pack_repository = CreditPackRepository(db=db, schema=service_config.db_schema)

    if cache is None and settings.infrastructure.redis_enabled:
        cache = RedisCache(config=settings.infrastructure)
        logger.info("Redis balance cache enabled")

    if payment_gateway is None and service_config.stripe_secret_key:
        try:
            from .clients.stripe_client import StripeGateway

            payment_gateway = StripeGateway(
                secret_key=service_config.stripe_secret_key,
                webhook_secret=service_config.stripe_webhook_secret,
                currency=service_config.currency,
                timeout=service_config.gateway_timeout_seconds,
            )
        except Exception as e:
            logger.warning(f"Failed to initialize StripeGateway: {e}")
            logger.warning("Credit service will operate without payment gateway")

    ledger = CreditLedger(credit_repository)
    promo_code_service = PromoCodeService(promo_code_repository, event_bus=event_bus)
    credit_pack_service = CreditPackService(credit_pack_repository, cache=cache)
    transfer_coordinator = CreditTransferCoordinator(
        ledger, member_transfer_limit=service_config.member_transfer_limit
    )
    transaction_service = TransactionService(
        credit_repository=credit_repository,
        ledger=ledger,
        promo_code_service=promo_code_service,
        transfer_coordinator=transfer_coordinator,
        payment_gateway=payment_gateway,
        gateway_timeout_seconds=service_config.gateway_timeout_seconds,
        currency=service_config.currency,
        membership_repository=membership_repository,
    )
    credit_service = CreditService(
        repository=credit_repository,
        ledger=ledger,
        promo_code_service=promo_code_service,
        transaction_service=transaction_service,
        cache=cache,
        event_bus=event_bus,
        config=service_config,
        credit_pack_service=credit_pack_service,
    )
    membership_service = MembershipService(
        repository=membership_repository,
        payment_gateway=payment_gateway,
        credit_service=credit_service,
        event_bus=event_bus,
        config=service_config,
    )

    return CreditServices(
        credit_service=credit_service,
        promo_code_service=promo_code_service,
        membership_service=membership_service,
        credit_pack_service=credit_pack_service,
        db=db,
    )


def load_migrations(schema: str = "credit") -> List[str]:
    """
    Read the bundled schema migrations in file-name order.

    The scripts are written against the ``credit`` schema; a different
    configured schema name is substituted in.
    """
    scripts = []
    for path in sorted(MIGRATIONS_DIR.glob("*.sql")):
        script = path.read_text(encoding="utf-8")
        if schema != "credit":
            script = re.sub(r"\bcredit\.", f"{schema}.", script)
            script = script.replace("SCHEMA IF NOT EXISTS credit;", f"SCHEMA IF NOT EXISTS {schema};")
        scripts.append(script)
    return scripts


async def apply_migrations(db: PostgresClientWrapper, schema: str = "credit") -> int:
    """Apply the bundled migrations; every statement is idempotent"""
    scripts = load_migrations(schema)
    for script in scripts:
        await db.run_script(script)
    logger.info(f"Applied {len(scripts)} migration(s) to schema {schema}")
    return len(scripts)


__all__ = ["CreditServices", "create_credit_service", "apply_migrations", "load_migrations"]
