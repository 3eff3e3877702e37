"""
Test configuration and fixtures for pytest.

Sets the environment every test expects (a fixed controller identity, the
local registry backend, zero retry backoff) before any ocf module is imported.
Cluster fakes for controller tests live in k8s/conftest.py.
"""

import sys
import os
from pathlib import Path
import pytest

# Add the orchestrator directory to sys.path
orchestrator_dir = Path(__file__).parent.parent
sys.path.insert(0, str(orchestrator_dir))


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any ocf imports
    os.environ["POD_NAME"] = "acm-self"
    os.environ["IMPLEMENTATION"] = "minikube"
    os.environ["REGISTRY"] = "registry.test"
    os.environ["REPOSITORY"] = "ocf"
    os.environ["LOG_LEVEL"] = "DEBUG"
    # No real sleeping between retries
    os.environ["API_RETRY_MIN_WAIT"] = "0"
    os.environ["API_RETRY_MAX_WAIT"] = "0"
    os.environ["REGISTRY_RETRY_MIN_WAIT"] = "0"
    os.environ["REGISTRY_RETRY_MAX_WAIT"] = "0"

    # Import and clear settings cache after env vars are set
    from ocf.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising Kubernetes code paths")
