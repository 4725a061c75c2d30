"""
Root conftest.py - Global configuration for all test layers.

Test Layers:
    - contracts/ : Data contracts and the test data factory
    - component/ : Component tests (engine wired over in-memory fakes)
    - unit/      : Unit tests (pure functions, no I/O)
"""
import os
import sys

import pytest

# Set testing environment BEFORE any project imports
os.environ.setdefault("ENV", "testing")
os.environ.setdefault("NATS_ENABLED", "false")

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from tests.contracts.campaign_workflow.data_contract import CampaignWorkflowTestDataFactory


# =============================================================================
# Test Configuration
# =============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
    config.addinivalue_line(
        "markers", "component: marks tests as component tests"
    )


@pytest.fixture(scope="session")
def data_factory() -> CampaignWorkflowTestDataFactory:
    """Shared test data factory"""
    return CampaignWorkflowTestDataFactory()
