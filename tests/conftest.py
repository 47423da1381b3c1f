"""Pytest fixtures and utilities for the Bourse test suite."""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

import numpy as np
import pytest
import pytest_asyncio

from bourse.core.config import MarketConfig
from bourse.core.engine import BourseEngine
from bourse.core.models import Holding, OrderSide, PendingOrder
from bourse.ledger.paper import InMemoryCashLedger, InMemoryDemandAccount
from bourse.market.clock import MarketClock, VirtualClock
from bourse.market.macro import MacroRegulationController
from bourse.market.pricing import PriceTickEngine
from bourse.market.selector import PatternSelector
from bourse.settlement.payments import PaymentProcessor
from bourse.settlement.queue import OrderSettlementQueue
from bourse.storage.database import Database
from bourse.utils.randomness import RandomSource

# Monday 2 March 2026, 10:00 UTC
MONDAY_MORNING = datetime(2026, 3, 2, 10, 0)
# Saturday 7 March 2026, 10:00 UTC
SATURDAY_MORNING = datetime(2026, 3, 7, 10, 0)

ACCOUNT = "alice"
CURRENCY = "credits"


class StubRandom(RandomSource):
    """RandomSource returning scripted uniform draws and zero noise."""

    def __init__(self, values: Optional[Iterable[float]] = None, default: float = 0.5):
        super().__init__(seed=0)
        self._values = list(values or [])
        self._default = default

    def random(self) -> float:
        if self._values:
            return self._values.pop(0)
        return self._default

    def weighted_choice(self, items, weights):
        cumulative = np.cumsum(weights) / sum(weights)
        index = int(np.searchsorted(cumulative, self.random(), side="right"))
        return items[min(index, len(items) - 1)]

    def standard_normal(self) -> float:
        return 0.0


# =============================================================================
# Configuration Fixtures
# =============================================================================

def make_market_config(**overrides) -> MarketConfig:
    """Market config with a forced-open market unless overridden."""
    values = dict(
        currency=CURRENCY,
        initial_price=1200.0,
        market_status="open",
        freeze_cost_per_minute=100.0,
        min_freeze_minutes=10.0,
        max_freeze_minutes=1440.0,
        max_holdings=100000,
        day_limit_ratio=0.5,
        open_hour=8,
        close_hour=23,
        market_timezone="UTC",
    )
    values.update(overrides)
    return MarketConfig(**values)


@pytest.fixture
def market_config():
    return make_market_config()


@pytest.fixture
def instant_config():
    """Config without a settlement freeze."""
    return make_market_config(max_freeze_minutes=0.0)


# =============================================================================
# Infrastructure Fixtures
# =============================================================================

@pytest_asyncio.fixture
async def test_database():
    """Create an in-memory test database."""
    db = Database("sqlite+aiosqlite:///:memory:")
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def rng():
    return RandomSource(seed=42)


@pytest.fixture
def virtual_clock():
    return VirtualClock(MONDAY_MORNING)


@pytest.fixture
def ledger():
    return InMemoryCashLedger({(ACCOUNT, CURRENCY): Decimal("100000")})


@pytest.fixture
def demand_account():
    return InMemoryDemandAccount()


# =============================================================================
# Component Fixtures
# =============================================================================

@pytest.fixture
def macro_controller(test_database, rng):
    return MacroRegulationController(test_database, rng)


@pytest.fixture
def price_engine(test_database, market_config, rng):
    clock = MarketClock(market_config)
    macro = MacroRegulationController(test_database, rng)
    selector = PatternSelector(rng)
    return PriceTickEngine(test_database, market_config, clock, macro, selector, rng)


def make_queue(database, ledger, config, price="1200", demand_account=None):
    """Settlement queue with a mutable fixed price source."""
    state = {"price": Decimal(price)}

    async def price_source():
        return state["price"]

    payments = PaymentProcessor(ledger, config.currency, demand_account)
    queue = OrderSettlementQueue(database, payments, config, price_source)
    queue.test_price = state
    return queue


@pytest.fixture
def settlement_queue(test_database, ledger, market_config, demand_account):
    return make_queue(test_database, ledger, market_config, demand_account=demand_account)


@pytest_asyncio.fixture
async def engine(test_database, ledger, instant_config, virtual_clock):
    """Engine with an open market, no freeze and debug commands enabled."""
    bourse = BourseEngine(
        database=test_database,
        ledger=ledger,
        config=instant_config,
        rng=RandomSource(seed=7),
        time_source=virtual_clock,
        enable_debug=True
    )
    await bourse.load_state()
    return bourse


# =============================================================================
# Record Factories
# =============================================================================

def make_holding(shares: int = 10, total_cost: str = "12000", account_id: str = ACCOUNT) -> Holding:
    return Holding(account_id=account_id, shares=shares, total_cost=Decimal(total_cost))


def make_order(
    side: OrderSide = OrderSide.BUY,
    shares: int = 10,
    unit_price: str = "1200",
    start: datetime = MONDAY_MORNING,
    minutes: float = 120,
    account_id: str = ACCOUNT
) -> PendingOrder:
    price = Decimal(unit_price)
    return PendingOrder(
        account_id=account_id,
        side=side,
        shares=shares,
        unit_price=price,
        notional=price * shares,
        cost_basis=price * shares,
        start_time=start,
        end_time=start + timedelta(minutes=minutes)
    )
