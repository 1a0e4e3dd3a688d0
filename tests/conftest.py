"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta, timezone
import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["CORS_ORIGINS"] = "http://localhost:3000"

from content_rail.core.ledger import fingerprint_of
from content_rail.core.licensing import LicensingEngine


class ManualClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_fingerprint(n: int) -> bytes:
    return fingerprint_of(f"article-{n}".encode("utf-8"))


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def engine(clock):
    return LicensingEngine(clock=clock)


@pytest.fixture
def fp():
    """Factory for distinct 32-byte fingerprints."""
    return make_fingerprint


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}
