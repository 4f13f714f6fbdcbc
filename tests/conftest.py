"""Shared pytest configuration.

A valid encryption key is placed in the environment before any test imports
settings, and the settings cache is cleared around every test.
"""

import base64
import os

import pytest

TEST_ENCRYPTION_KEY = base64.b64encode(bytes(range(32))).decode("ascii")

os.environ.setdefault("ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    from mailmirror.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
