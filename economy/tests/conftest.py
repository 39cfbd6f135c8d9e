from datetime import datetime, timedelta, timezone

import pytest

from economy.database import Database
from economy.ledger import GemLedger
from economy.moderation import ReportService, SuspensionEngine
from economy.referrals import ReferralService
from economy.vesting import VestingEngine


START = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger(db, clock):
    return GemLedger(db, clock=clock)


@pytest.fixture
def referrals(db, ledger, clock):
    return ReferralService(db, ledger, clock=clock)


@pytest.fixture
def activity():
    """Conversation counts per referred user."""
    return {}


@pytest.fixture
def vesting(db, ledger, clock, activity):
    return VestingEngine(db, ledger, conversation_count=lambda user_id: activity.get(user_id, 0), clock=clock)


@pytest.fixture
def suspensions(db, clock):
    return SuspensionEngine(db, clock=clock)


@pytest.fixture
def reports(db, suspensions, clock):
    return ReportService(db, suspensions, clock=clock)
