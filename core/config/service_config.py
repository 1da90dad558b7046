#!/usr/bin/env python3
"""Credit service configuration

Ledger-specific settings: HTTP port, cache TTL, payment gateway credentials
and limits, and the monthly credit allowance of each membership plan.
"""
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

def _bool(val: str) -> bool:
    return val.lower() == "true"

def _int(val: str, default: int) -> int:
    try:
        return int(val) if val else default
    except ValueError:
        return default

def _float(val: str, default: float) -> float:
    try:
        return float(val) if val else default
    except ValueError:
        return default

def _plan_credits(val: str) -> Dict[str, int]:
    """Parse "basic:4,professional:12" into a plan -> credits mapping"""
    plans: Dict[str, int] = {}
    for item in (val or "").split(","):
        if ":" not in item:
            continue
        plan, amount = item.split(":", 1)
        plans[plan.strip()] = _int(amount.strip(), 0)
    return plans


DEFAULT_PLAN_CREDITS = "basic:4,professional:12,premium:30"


@dataclass
class ServiceConfig:
    """Credit service settings"""

    # ===========================================
    # HTTP
    # ===========================================
    service_name: str = "credit_service"
    service_host: str = "0.0.0.0"
    service_port: int = 8229
    debug: bool = False

    # ===========================================
    # Ledger
    # ===========================================
    db_schema: str = "credit"
    run_migrations: bool = False
    cache_ttl_seconds: int = 300
    member_transfer_limit: int = 50
    professional_purchase_warning: int = 100

    # ===========================================
    # Payment gateway (Stripe)
    # ===========================================
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    gateway_timeout_seconds: float = 15.0
    currency: str = "gbp"
    platform_name: str = "credit-ledger"

    # ===========================================
    # Membership plans
    # ===========================================
    plan_credits: Dict[str, int] = field(default_factory=lambda: _plan_credits(DEFAULT_PLAN_CREDITS))

    @classmethod
    def from_env(cls) -> 'ServiceConfig':
        """Load service configuration from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            service_name=os.getenv("SERVICE_NAME", "credit_service"),
            service_host=os.getenv("CREDIT_SERVICE_HOST") or os.getenv("HOST", "0.0.0.0"),
            service_port=_int(os.getenv("CREDIT_SERVICE_PORT") or os.getenv("PORT", "8229"), 8229),
            debug=_bool(os.getenv("DEBUG", "true" if env == "development" else "false")),

            db_schema=os.getenv("CREDIT_DB_SCHEMA", "credit"),
            run_migrations=_bool(os.getenv("CREDIT_RUN_MIGRATIONS", "true" if env == "development" else "false")),
            cache_ttl_seconds=_int(os.getenv("CREDIT_CACHE_TTL", "300"), 300),
            member_transfer_limit=_int(os.getenv("MEMBER_TRANSFER_LIMIT", "50"), 50),
            professional_purchase_warning=_int(os.getenv("PROFESSIONAL_PURCHASE_WARNING", "100"), 100),

            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or os.getenv("PAYMENT_SERVICE_STRIPE_SECRET_KEY"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            gateway_timeout_seconds=_float(os.getenv("PAYMENT_GATEWAY_TIMEOUT", "15"), 15.0),
            currency=os.getenv("PAYMENT_CURRENCY", "gbp").lower(),
            platform_name=os.getenv("PLATFORM_NAME", "credit-ledger"),

            plan_credits=_plan_credits(os.getenv("PLAN_CREDITS", DEFAULT_PLAN_CREDITS)),
        )
