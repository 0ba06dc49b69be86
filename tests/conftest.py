import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from marketplace_sync.core.budget import TimeBudget  # noqa: E402
from marketplace_sync.db.base import Base, get_session_factory, to_storage  # noqa: E402
from marketplace_sync.db.models import Account  # noqa: E402
from marketplace_sync.services.platform import FetchContext, SyncRequest  # noqa: E402


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingChannel:
    """Stand-in for OwnerChannel that keeps every published event."""

    def __init__(self):
        self.events = []
        self.active = 0

    def publish(self, event_type, message="", **fields):
        self.events.append({"type": event_type, "message": message, **fields})

    def progress(self, message, **fields):
        self.publish("sync_progress", message, **fields)

    def warn(self, message, error_code=None, account_id=None):
        self.publish("sync_warning", message, error_code=error_code, account_id=account_id)

    def warning_sink(self, account_id=None):
        def sink(message, error_code):
            self.warn(message, error_code=error_code, account_id=account_id)

        return sink

    def detach_all(self):
        self.publish("closed")

    def begin_sync(self):
        self.active += 1

    def end_sync(self, close=True):
        self.active -= 1
        if close and self.active == 0:
            self.detach_all()
            return True
        return False

    def codes(self):
        return [event.get("error_code") for event in self.events if event.get("error_code")]


async def no_sleep(_seconds):
    return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


def make_account(**overrides) -> Account:
    values = {
        "id": "acc-1",
        "platform": "meli",
        "owner_id": "owner-1",
        "external_id": "123456",
        "nickname": "LOJA_TESTE",
        "access_token": "token",
        "refresh_token": "refresh",
        "expires_at": to_storage(datetime.now(timezone.utc) + timedelta(hours=6)),
        "created_at": to_storage(datetime.now(timezone.utc)),
    }
    values.update(overrides)
    return Account(**values)


async def add_accounts(session_factory, *accounts):
    async with session_factory() as session:
        for account in accounts:
            session.add(account)
        await session.commit()


def plain_account(**overrides):
    """Lightweight account object for code that never touches the database."""
    values = {
        "id": "acc-1",
        "platform": "meli",
        "owner_id": "owner-1",
        "external_id": "123456",
        "nickname": "LOJA_TESTE",
        "access_token": "token",
        "refresh_token": "refresh",
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def sale_row(order_id, **overrides):
    """Minimal SaleRecord column values."""
    row = {
        "platform": "meli",
        "order_id": order_id,
        "owner_id": "owner-1",
        "account_id": "acc-1",
        "sale_date": datetime(2024, 5, 10, 15, 5),
        "status": "paid",
        "gross_amount": Decimal("100.00"),
        "unit_price": Decimal("50.00"),
        "quantity": 2,
        "platform_fee": Decimal("-12.00"),
        "freight": Decimal("-8.00"),
        "margin": Decimal("80.00"),
        "margin_is_real": False,
        "title": "Fone Bluetooth",
        "buyer": "COMPRADOR01",
        "platform_label": "Mercado Livre",
        "channel": "ML",
    }
    row.update(overrides)
    return row


def fetch_context(channel, account=None, request=None, budget_seconds=30.0, clock=None, **overrides):
    """FetchContext with a generous budget and a recording channel."""
    account = account or plain_account()
    values = {
        "account": account,
        "request": request or SyncRequest(platform=account.platform, owner_id=account.owner_id),
        "budget": TimeBudget(budget_seconds, clock=clock or FakeClock()),
        "channel": channel,
        "order_budget": 3000,
    }
    values.update(overrides)
    return FetchContext(**values)
