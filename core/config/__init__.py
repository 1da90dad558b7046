#!/usr/bin/env python3
"""Modular configuration system for the credit ledger

Configuration hierarchy:
- infra_config: Infrastructure services (PostgreSQL, Redis, NATS)
- service_config: Credit service settings (ledger limits, Stripe, plans)
- logging_config: Logging configuration
- app_config: Aggregate of all of the above

Values come from the process environment. A ``.env`` file and an
environment-specific ``.env.<env>`` (e.g. ``.env.testing``) are loaded first
when present; variables already set in the process win.
"""
import os
from dotenv import load_dotenv
from .app_config import AppConfig
from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig

env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
for env_file in (f".env.{env}", ".env"):
    load_dotenv(env_file, override=False)

# Create global settings instance
settings = AppConfig.from_env()


def get_settings() -> AppConfig:
    """Get global settings instance"""
    return settings


def reload_settings() -> AppConfig:
    """Reload settings from environment"""
    global settings
    settings = AppConfig.from_env()
    return settings


__all__ = [
    'AppConfig',
    'get_settings',
    'reload_settings',
    'settings',
    'LoggingConfig',
    'InfraConfig',
    'ServiceConfig',
]
