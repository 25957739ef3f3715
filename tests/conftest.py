"""Pytest configuration and shared fixtures.

Unit tests run without external services: the SQL job store is exercised
against mocked AsyncSession objects, everything else against the in-memory
job store, httpx.MockTransport and a patched smtplib.
"""

from __future__ import annotations

import random
from unittest.mock import AsyncMock

import pytest

from tests.factories import FakeClock, make_mock_session
from weathermail.services.backoff import BackoffPolicy
from weathermail.services.memory_queue import InMemoryJobStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def mock_session() -> AsyncMock:
    return make_mock_session()


@pytest.fixture
def no_jitter_backoff() -> BackoffPolicy:
    """Backoff without jitter: 10s, 20s, 40s..."""
    return BackoffPolicy(base_seconds=10, max_seconds=3600, jitter_ratio=0)


@pytest.fixture
def seeded_backoff() -> BackoffPolicy:
    return BackoffPolicy(base_seconds=10, max_seconds=3600, jitter_ratio=0.1, rng=random.Random(42))


@pytest.fixture
def memory_store(no_jitter_backoff: BackoffPolicy) -> InMemoryJobStore:
    return InMemoryJobStore(backoff=no_jitter_backoff, max_attempts=5)
