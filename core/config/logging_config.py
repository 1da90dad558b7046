#!/usr/bin/env python3
"""Logging configuration

Read by core.logger.setup_service_logger. Driver libraries listed in
quiet_loggers are capped at WARNING so ledger logs stay readable.
"""
import os
from dataclasses import dataclass, field
from typing import List

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_QUIET_LOGGERS = "asyncpg,nats,stripe,httpx"


def _bool(val: str) -> bool:
    return val.lower() == "true"


def _names(val: str) -> List[str]:
    return [name.strip() for name in (val or "").split(",") if name.strip()]


@dataclass
class LoggingConfig:
    """Log level, format and destinations of the credit service"""
    log_level: str = "INFO"
    log_format: str = DEFAULT_LOG_FORMAT
    log_file: str = ""
    enable_console: bool = True
    quiet_loggers: List[str] = field(default_factory=lambda: _names(DEFAULT_QUIET_LOGGERS))

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        """Load logging config from environment variables"""
        env = os.getenv("ENV") or os.getenv("ENVIRONMENT", "development")
        return cls(
            log_level=os.getenv("LOG_LEVEL", "DEBUG" if env == "development" else "INFO"),
            log_format=os.getenv("LOG_FORMAT", DEFAULT_LOG_FORMAT),
            log_file=os.getenv("LOG_FILE", ""),
            enable_console=_bool(os.getenv("LOG_CONSOLE", "true")),
            quiet_loggers=_names(os.getenv("LOG_QUIET_LOGGERS", DEFAULT_QUIET_LOGGERS)),
        )
