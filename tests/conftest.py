"""
Root conftest.py - Global fixtures and configuration for all test layers.

Test Layers:
    - component/  : Component tests (mocked repositories, gateway, cache, bus)
    - unit/       : Unit tests (pure functions, no I/O)
    - contracts/  : Data contracts and test data factories shared by the layers
"""
import os
import sys
from typing import Any, Dict

import pytest

# Set testing environment BEFORE any service imports
os.environ.setdefault("ENV", "testing")
os.environ["NATS_ENABLED"] = "false"
os.environ["REDIS_ENABLED"] = "false"

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from tests.contracts.credit.data_contract import CreditTestDataFactory


# =============================================================================
# Test Configuration
# =============================================================================

class TestConfig:
    """Centralized test configuration"""

    SERVICE_NAME = "credit_service"
    SERVICE_PORT = 8229

    # Infrastructure
    POSTGRES_HOST = os.getenv("POSTGRES_HOST", "localhost")
    POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
    NATS_URL = os.getenv("NATS_URL", "nats://localhost:4222")
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379")

    @classmethod
    def get_service_url(cls) -> str:
        return f"http://localhost:{cls.SERVICE_PORT}"


@pytest.fixture(scope="session")
def test_config() -> TestConfig:
    """Provide test configuration"""
    return TestConfig()


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_promo_code_request() -> Dict[str, Any]:
    """Valid create-promo-code payload"""
    return CreditTestDataFactory.make_create_promo_code_request()


def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line("markers", "component: marks tests as component tests")
    config.addinivalue_line("markers", "unit: marks tests as unit tests")
