#!/usr/bin/env python3
"""
Core Module for the Credit Ledger

Shared infrastructure components used by the microservices.

COMPONENTS:
    - config/: Dataclass configuration loaded from environment (.env via python-dotenv)
    - logger.py: Service logger setup
    - postgres_client.py: asyncpg pool with transaction scopes
    - redis_client.py: Best-effort Redis cache
    - nats_client.py: NATS JetStream event bus

USAGE:
    from core.config import get_settings
    from core.postgres_client import PostgresClientWrapper

    settings = get_settings()
    db = PostgresClientWrapper(service_name="credit_service")
"""

__version__ = "2.0.0"
