"""Pytest configuration for the GxP E-Log."""

import pytest


def pytest_configure(config):
    """Configure pytest with custom settings."""
    config.addinivalue_line("markers", "gxp: mark test as GxP compliance test")


pytest.mark.filterwarnings("ignore::pytest.PytestCollectionWarning")
