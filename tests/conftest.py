"""
MintForge Test Configuration
============================
Shared fixtures and pytest markers for the test suite.
"""

import os
import sys
import tempfile

# Keep session logs out of the working tree
os.environ.setdefault("MINTFORGE_LOG_DIR", os.path.join(tempfile.gettempdir(), "mintforge-test-logs"))

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from config.settings import Settings


# ============================================================================
# PYTEST MARKERS
# ============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: end-to-end pipeline tests against simulated collaborators"
    )


# ============================================================================
# SHARED FIXTURES
# ============================================================================

class FastSettings(Settings):
    """Production defaults shrunk so timing-dependent paths run in milliseconds."""
    SILENT_MODE = True
    RPC_ENDPOINTS = [
        "https://rpc-one.test",
        "https://rpc-two.test",
        "https://rpc-three.test",
    ]
    ENDPOINT_PROBE_TIMEOUT_S = 0.5
    ENDPOINT_BACKOFF_BASE_S = 0.001
    UPLOAD_TIMEOUT_S = 1.0
    UPLOAD_BACKOFF_BASE_S = 0.001
    GATEWAY_PROBE_TIMEOUT_S = 0.5
    VERIFY_ROUNDS = 1
    VERIFY_ROUND_DELAY_S = 0.001
    CONFIRM_POLL_INTERVAL_S = 0.005
    CONFIRM_TIMEOUT_S = 5.0
    CONFIRM_BACKOFF_BASE_S = 0.001
    CONFIRM_DROP_AFTER_S = 0.05
    LISTING_POLL_INTERVAL_S = 0.01
    LISTING_TIMEOUT_S = 0.1
    LISTING_REQUEST_TIMEOUT_S = 0.5


@pytest.fixture(autouse=True)
def quiet_logger():
    """Silence console output during tests."""
    from mintforge.shared.system.logging import Logger
    Logger.set_silent(True)
    yield
    Logger.set_silent(False)


@pytest.fixture
def fast_settings():
    return FastSettings


@pytest.fixture
def gateways():
    return list(Settings.IPFS_PUBLIC_GATEWAYS)


@pytest.fixture
def manifest():
    from mintforge.shared.schemas.manifest import AssetManifest
    return AssetManifest(
        name="Chimp Coin",
        symbol="chimp",
        decimals=6,
        initial_supply=1_000_000,
        description="Test asset",
        website="https://chimp.example",
    )


@pytest.fixture
def png_bytes():
    """Smallest valid-looking PNG payload."""
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
