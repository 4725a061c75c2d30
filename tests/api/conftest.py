"""
API Test Layer Configuration

Routes are exercised in-process through httpx ASGITransport against a
service factory on the in-memory store.

Usage:
    pytest tests/api -v
"""
import os
import sys

import pytest

# Add project root
sys.path.insert(
    0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
)


def pytest_configure(config):
    config.addinivalue_line("markers", "api: marks tests as API contract tests")


def pytest_collection_modifyitems(config, items):
    """Mark everything under tests/api as an API test"""
    for item in items:
        if "tests/api/" in str(item.path).replace(os.sep, "/"):
            item.add_marker(pytest.mark.api)
