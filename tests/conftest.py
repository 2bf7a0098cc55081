"""Test fixtures for the sync engine.

Provides:
- repo: empty InMemorySyncRepository
- woo / qbo / internal: FakePlatformClient per platform
- clients: platform name -> fake client
- orchestrator: SyncOrchestrator wired to the doubles above
"""

from __future__ import annotations

import pytest

from src.retail_sync.sync.orchestrator import SyncOrchestrator
from tests.doubles import FakePlatformClient, InMemorySyncRepository, make_orchestrator


@pytest.fixture
def repo() -> InMemorySyncRepository:
    return InMemorySyncRepository()


@pytest.fixture
def woo() -> FakePlatformClient:
    return FakePlatformClient("woocommerce", id_prefix="woo")


@pytest.fixture
def qbo() -> FakePlatformClient:
    return FakePlatformClient("quickbooks", id_prefix="qbo")


@pytest.fixture
def internal() -> FakePlatformClient:
    return FakePlatformClient("internal", id_prefix="int")


@pytest.fixture
def clients(woo, qbo, internal) -> dict[str, FakePlatformClient]:
    return {"woocommerce": woo, "quickbooks": qbo, "internal": internal}


@pytest.fixture
def orchestrator(repo, clients) -> SyncOrchestrator:
    return make_orchestrator(repo, clients)
