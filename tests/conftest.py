import asyncio
from decimal import Decimal
from typing import Dict, Optional

import pytest
import pytest_asyncio

from crypto_crash import engine as engine_module
from crypto_crash.db import Ledger
from crypto_crash.engine import CrashGameEngine, GameConfig
from crypto_crash.events import EventBus
from crypto_crash.exceptions import PriceUnavailable
from crypto_crash.processor import BetProcessor


class ManualClock:
    """Time only moves when a test (or a sleep) moves it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.t = start

    def now(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds

    async def sleep(self, seconds: float) -> None:
        self.t += seconds
        await asyncio.sleep(0)


class FixedPriceOracle:
    """Static quotes; None behaves like an unreachable upstream."""

    def __init__(self, prices: Dict[str, Optional[Decimal]]) -> None:
        self.prices = dict(prices)
        self.calls = 0

    async def get_price(self, currency: str) -> Decimal:
        self.calls += 1
        price = self.prices.get(currency.lower())
        if price is None:
            raise PriceUnavailable(currency)
        return price


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def config():
    return GameConfig()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def oracle():
    return FixedPriceOracle({"btc": Decimal("60000"), "eth": Decimal("3000")})


@pytest_asyncio.fixture
async def ledger(tmp_path):
    ledger = Ledger(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    await ledger.init()
    yield ledger
    await ledger.dispose()


@pytest.fixture
def crash_at(monkeypatch):
    """Pin the crash point of every round the engine starts."""

    def pin(value: str) -> None:
        monkeypatch.setattr(engine_module, "generate_crash_point", lambda seed, round_id: Decimal(value))

    return pin


@pytest_asyncio.fixture
async def engine(ledger, bus, config, clock):
    engine = CrashGameEngine(ledger, bus, config, clock)
    yield engine
    await engine.stop()


@pytest.fixture
def processor(engine, ledger, oracle, bus, config):
    return BetProcessor(engine, ledger, oracle, bus, config)


def drain(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events
