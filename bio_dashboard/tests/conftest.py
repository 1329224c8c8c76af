"""
Pytest configuration for bio_dashboard. Tokens stay in memory; HTTP is faked with httpx.MockTransport.
"""
import os

# Keep the module-level app from reading or writing a token file in the working directory
os.environ["TOKEN_STORE_PATH"] = ""

import pytest


@pytest.fixture
def anyio_backend():
    return "asyncio"
