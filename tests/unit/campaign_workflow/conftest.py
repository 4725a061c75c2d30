"""
Unit Test Fixtures for Campaign Workflow Service

Pure logic only: predicates, anchors, recurrence, graph validation.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.campaign_workflow.data_contract import CampaignWorkflowTestDataFactory


@pytest.fixture
def factory():
    """Test data factory"""
    return CampaignWorkflowTestDataFactory()


@pytest.fixture
def now():
    """Fixed evaluation instant (Monday 2026-03-02 12:00 UTC)"""
    return CampaignWorkflowTestDataFactory.make_time()
