"""Shared fixtures for Credpool tests."""

from __future__ import annotations

import pytest

from Credpool.core.store import AccountStore
from tests.fakes import FakeVerifier, RecordingSleep


def pytest_configure(config: pytest.Config) -> None:
    config.option.asyncio_mode = "auto"


@pytest.fixture
def store() -> AccountStore:
    return AccountStore()


@pytest.fixture
def fake_verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
