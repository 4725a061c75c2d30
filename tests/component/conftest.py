"""
Component Test Layer Configuration

Structure:
    tests/component/
    └── campaign_workflow/   Engine over the in-memory store with fake
                             directory, messaging hub and event bus

Usage:
    pytest tests/component -v
"""
import os
import sys

import pytest

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def pytest_collection_modifyitems(config, items):
    """Mark everything under tests/component as a component test"""
    for item in items:
        if "tests/component/" in str(item.path).replace(os.sep, "/"):
            item.add_marker(pytest.mark.component)
