"""
Shared fixtures for the merchant onboarding tests

In-memory SQLite merchant store, a tmp_path queue directory and a frozen
clock so token expiry and queue scheduling are deterministic.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from ..config import TestingConfig
from ..database import DatabaseService, MerchantStore
from ..delivery_queue import CredentialDeliveryQueue
from ..emailer import ConsoleEmailSender
from ..models import MerchantRecord
from ..service import OnboardingService


class FrozenClock:
    """Callable clock that only moves when told to"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 3, 3, 5, 30, tzinfo=timezone.utc))


@pytest.fixture
def queue_dir(tmp_path):
    return tmp_path / "data"


@pytest.fixture
def config(queue_dir):
    """TestingConfig pointed at the per-test queue directory"""
    return type('PerTestConfig', (TestingConfig,), {'QUEUE_DIR': str(queue_dir)})


@pytest.fixture
def db():
    service = DatabaseService('sqlite:///:memory:')
    service.create_tables()
    yield service
    service.drop_tables()


@pytest.fixture
def store(db):
    return MerchantStore(db)


@pytest.fixture
def make_merchant(store):
    """Insert a bare merchant record and return its id"""
    def _make(email="owner@amini.co.ke", business_name="Amini Electronics", **fields):
        return store.create(MerchantRecord(email=email, business_name=business_name, **fields))
    return _make


@pytest.fixture
def sleep():
    return Mock()


@pytest.fixture
def delivery_queue(queue_dir, clock, sleep):
    return CredentialDeliveryQueue(queue_dir, clock=clock, sleep=sleep, inter_send_delay=2.0)


@pytest.fixture
def sender():
    return ConsoleEmailSender()


@pytest.fixture
def service(store, config, delivery_queue, sender, clock):
    return OnboardingService(store, config=config, queue=delivery_queue, sender=sender, clock=clock)


@pytest.fixture
def merchant_input():
    return {
        "businessName": "Amini Electronics",
        "email": "a@x.com",
        "phone": "+254 712 345 678",
        "address": "Moi Avenue, Nairobi CBD",
        "businessType": "Electronics",
    }
