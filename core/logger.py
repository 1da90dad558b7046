#!/usr/bin/env python3
"""
Service logger setup

Configures the root logger once per process so every module-level
``logging.getLogger(__name__)`` inherits the service handlers and format.
"""

import logging
import sys
from typing import Optional

from core.config import LoggingConfig

_configured_services = set()


def setup_service_logger(
    service_name: str,
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    config: Optional[LoggingConfig] = None,
) -> logging.Logger:
    """
    Configure logging for a microservice and return its named logger.

    Args:
        service_name: Logger name, usually the service package name
        level: Log level override (falls back to LoggingConfig.log_level)
        log_file: Optional file path; falls back to LoggingConfig.log_file
        config: Optional LoggingConfig (loaded from environment if omitted)

    Returns:
        Logger named after the service
    """
    config = config or LoggingConfig.from_env()
    level_name = (level or config.log_level or "INFO").upper()
    log_file = log_file or config.log_file

    root = logging.getLogger()
    if service_name not in _configured_services:
        formatter = logging.Formatter(config.log_format)

        if config.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(formatter)
            root.addHandler(console)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        for noisy in config.quiet_loggers:
            logging.getLogger(noisy).setLevel(logging.WARNING)

        _configured_services.add(service_name)

    root.setLevel(getattr(logging, level_name, logging.INFO))

    logger = logging.getLogger(service_name)
    logger.setLevel(getattr(logging, level_name, logging.INFO))
    return logger


__all__ = ["setup_service_logger"]
