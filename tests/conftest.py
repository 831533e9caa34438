"""Shared fixtures: in-memory billing store, mocked gateway, synchronizer."""

from unittest.mock import MagicMock

import pytest

from factories import WEBHOOK_SECRET
from fakes import InMemoryBillingStore
from shopkeeper.billing.gateway import StripeGateway
from shopkeeper.billing.synchronizer import BillingSynchronizer


@pytest.fixture
def store() -> InMemoryBillingStore:
    return InMemoryBillingStore()


@pytest.fixture
def gateway() -> MagicMock:
    return MagicMock(spec=StripeGateway)


@pytest.fixture
def synchronizer(store, gateway) -> BillingSynchronizer:
    return BillingSynchronizer(store, gateway, WEBHOOK_SECRET)
