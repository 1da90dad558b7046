#!/usr/bin/env python3
"""Top-level configuration aggregating all sub-configs"""
import os
from dataclasses import dataclass, field

from .infra_config import InfraConfig
from .logging_config import LoggingConfig
from .service_config import ServiceConfig


@dataclass
class AppConfig:
    """Credit ledger configuration with all sub-configs"""

    # Environment
    environment: str = "development"

    # Sub-configurations
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    infrastructure: InfraConfig = field(default_factory=InfraConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)

    @property
    def is_production(self) -> bool:
        return self.environment in ("production", "prod")

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Load complete configuration from environment"""
        return cls(
            environment=os.getenv("ENV") or os.getenv("ENVIRONMENT", "development"),
            logging=LoggingConfig.from_env(),
            infrastructure=InfraConfig.from_env(),
            service=ServiceConfig.from_env(),
        )
