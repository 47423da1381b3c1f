"""Unit tests for the order settlement queue."""
import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from bourse.core.models import OrderSide, RejectReason
from bourse.ledger.paper import InMemoryCashLedger

from conftest import (ACCOUNT, CURRENCY, MONDAY_MORNING, make_holding,
                      make_market_config, make_queue)

NOW = MONDAY_MORNING


class FlakyLedger(InMemoryCashLedger):
    """Paper ledger whose credits can be switched off."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.refuse_credits = False

    async def adjust_balance(self, account_id, currency, delta):
        if delta > 0 and self.refuse_credits:
            return False
        return await super().adjust_balance(account_id, currency, delta)


class TestFreezeSizing:
    """Tests for freeze duration."""

    def test_proportional_to_value(self, settlement_queue):
        assert settlement_queue.compute_freeze_minutes(Decimal("12000")) == 120

    def test_minimum_applies(self, settlement_queue):
        assert settlement_queue.compute_freeze_minutes(Decimal("500")) == 10

    def test_maximum_applies(self, settlement_queue):
        assert settlement_queue.compute_freeze_minutes(Decimal("1000000")) == 1440

    def test_zero_maximum_disables_freeze(self, test_database, ledger):
        queue = make_queue(test_database, ledger, make_market_config(max_freeze_minutes=0.0))
        assert queue.compute_freeze_minutes(Decimal("1000000")) == 0

    def test_minimum_wins_when_misconfigured(self, test_database, ledger):
        config = make_market_config(min_freeze_minutes=60.0, max_freeze_minutes=30.0)
        queue = make_queue(test_database, ledger, config)
        assert queue.compute_freeze_minutes(Decimal("100000")) == 60


class TestBuy:
    """Tests for buy placement and settlement."""

    @pytest.mark.asyncio
    async def test_buy_pays_and_freezes(self, settlement_queue, ledger, test_database):
        result = await settlement_queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)

        assert result.success
        receipt = result.payload
        assert receipt.freeze_minutes == 120
        assert receipt.settled is False
        assert receipt.order.notional == Decimal("12000.00")
        assert receipt.order.end_time == NOW + timedelta(minutes=120)
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("88000.00")
        assert await test_database.get_holding(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_matured_buy_settles_once(self, settlement_queue, test_database):
        await settlement_queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)

        assert await settlement_queue.process_matured(NOW + timedelta(minutes=119)) == []

        records = await settlement_queue.process_matured(NOW + timedelta(minutes=120))
        assert len(records) == 1
        assert records[0].holding.shares == 10

        assert await settlement_queue.process_matured(NOW + timedelta(minutes=121)) == []
        holding = await test_database.get_holding(ACCOUNT)
        assert holding.shares == 10
        assert holding.total_cost == Decimal("12000.00")

    @pytest.mark.asyncio
    async def test_concurrent_processing_settles_once(self, settlement_queue, test_database):
        for _ in range(3):
            await settlement_queue.place_order(ACCOUNT, OrderSide.BUY, 5, NOW)

        later = NOW + timedelta(days=1)
        batches = await asyncio.gather(
            settlement_queue.process_matured(later),
            settlement_queue.process_matured(later)
        )

        assert sum(len(b) for b in batches) == 3
        holding = await test_database.get_holding(ACCOUNT)
        assert holding.shares == 15

    @pytest.mark.asyncio
    async def test_same_side_orders_are_serialized(self, settlement_queue, test_database):
        await asyncio.gather(*[
            settlement_queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)
            for _ in range(4)
        ])

        orders = await test_database.get_pending_orders(ACCOUNT)
        assert len(orders) == 4
        for earlier, later in zip(orders, orders[1:]):
            assert later.start_time >= earlier.end_time

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, settlement_queue, ledger, test_database):
        result = await settlement_queue.place_order(ACCOUNT, OrderSide.BUY, 100, NOW)

        assert not result.success
        assert result.reason == RejectReason.INSUFFICIENT_FUNDS
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("100000.00")
        assert await test_database.get_pending_orders() == []

    @pytest.mark.asyncio
    async def test_demand_account_covers_shortfall(self, test_database, demand_account):
        ledger = InMemoryCashLedger({(ACCOUNT, CURRENCY): Decimal("5000")})
        demand_account.deposit(ACCOUNT, CURRENCY, Decimal("10000"))
        queue = make_queue(test_database, ledger, make_market_config(), demand_account=demand_account)

        result = await queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)

        assert result.success
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("0.00")
        assert await demand_account.get_demand_total(ACCOUNT, CURRENCY) == Decimal("3000.00")

    @pytest.mark.asyncio
    async def test_failed_demand_leg_refunds_cash(self, test_database):
        ledger = InMemoryCashLedger({(ACCOUNT, CURRENCY): Decimal("5000")})
        demand = AsyncMock()
        demand.get_demand_total.return_value = Decimal("50000")
        demand.deduct_demand_fifo.return_value = False
        queue = make_queue(test_database, ledger, make_market_config(), demand_account=demand)

        result = await queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)

        assert result.reason == RejectReason.PAYMENT_FAILED
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("5000.00")
        assert await test_database.get_pending_orders() == []

    @pytest.mark.asyncio
    async def test_holding_cap_counts_pending(self, test_database, ledger):
        queue = make_queue(test_database, ledger, make_market_config(max_holdings=25), price="10")
        await test_database.save_holding(make_holding(shares=10, total_cost="100"))
        assert (await queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)).success

        result = await queue.place_order(ACCOUNT, OrderSide.BUY, 6, NOW)

        assert result.reason == RejectReason.HOLDING_LIMIT
        assert (await queue.place_order(ACCOUNT, OrderSide.BUY, 5, NOW)).success

    @pytest.mark.asyncio
    async def test_invalid_share_count(self, settlement_queue):
        for shares in (0, -3, 1.5, True):
            result = await settlement_queue.place_order(ACCOUNT, OrderSide.BUY, shares, NOW)
            assert result.reason == RejectReason.INVALID_INPUT

    @pytest.mark.asyncio
    async def test_legacy_holding_basis_estimated_at_maturity(self, settlement_queue, test_database):
        await test_database.save_holding(make_holding(shares=10, total_cost="0"))
        await settlement_queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)

        await settlement_queue.process_matured(NOW + timedelta(days=1))

        holding = await test_database.get_holding(ACCOUNT)
        assert holding.shares == 20
        assert holding.total_cost == Decimal("24000.00")


class TestSell:
    """Tests for sell placement and settlement."""

    @pytest.mark.asyncio
    async def test_sell_debits_shares_at_placement(self, settlement_queue, test_database, ledger):
        await test_database.save_holding(make_holding(shares=10, total_cost="12000"))
        settlement_queue.test_price["price"] = Decimal("1300")

        result = await settlement_queue.place_order(ACCOUNT, OrderSide.SELL, 4, NOW)

        assert result.success
        assert result.payload.order.cost_basis == Decimal("4800.00")
        holding = await test_database.get_holding(ACCOUNT)
        assert holding.shares == 6
        assert holding.total_cost == Decimal("7200.00")
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("100000.00")

    @pytest.mark.asyncio
    async def test_sell_credits_proceeds_at_maturity(self, settlement_queue, test_database, ledger):
        await test_database.save_holding(make_holding(shares=10, total_cost="12000"))
        settlement_queue.test_price["price"] = Decimal("1300")
        await settlement_queue.place_order(ACCOUNT, OrderSide.SELL, 10, NOW)

        records = await settlement_queue.process_matured(NOW + timedelta(minutes=130))

        assert len(records) == 1
        assert records[0].realized_pnl == Decimal("1000.00")
        assert records[0].realized_pnl_pct == Decimal("8.33")
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("113000.00")
        assert await test_database.get_holding(ACCOUNT) is None

    @pytest.mark.asyncio
    async def test_insufficient_shares(self, settlement_queue, test_database):
        await test_database.save_holding(make_holding(shares=3))

        result = await settlement_queue.place_order(ACCOUNT, OrderSide.SELL, 4, NOW)

        assert result.reason == RejectReason.INSUFFICIENT_SHARES
        assert (await test_database.get_holding(ACCOUNT)).shares == 3

    @pytest.mark.asyncio
    async def test_failed_credit_restores_order(self, test_database):
        ledger = FlakyLedger({(ACCOUNT, CURRENCY): Decimal("0")})
        queue = make_queue(test_database, ledger, make_market_config())
        await test_database.save_holding(make_holding(shares=10, total_cost="12000"))
        await queue.place_order(ACCOUNT, OrderSide.SELL, 10, NOW)
        later = NOW + timedelta(days=1)

        ledger.refuse_credits = True
        assert await queue.process_matured(later) == []
        assert len(await test_database.get_pending_orders(ACCOUNT)) == 1

        ledger.refuse_credits = False
        records = await queue.process_matured(later)
        assert len(records) == 1
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("12000.00")

    @pytest.mark.asyncio
    async def test_buy_and_sell_queues_are_independent(self, settlement_queue, test_database):
        await test_database.save_holding(make_holding(shares=10, total_cost="12000"))

        buy = await settlement_queue.place_order(ACCOUNT, OrderSide.BUY, 10, NOW)
        sell = await settlement_queue.place_order(ACCOUNT, OrderSide.SELL, 10, NOW)

        assert buy.payload.order.start_time == NOW
        assert sell.payload.order.start_time == NOW

    @pytest.mark.asyncio
    async def test_immediate_settlement_without_freeze(self, test_database, ledger):
        queue = make_queue(test_database, ledger, make_market_config(max_freeze_minutes=0.0))
        await test_database.save_holding(make_holding(shares=10, total_cost="12000"))
        queue.test_price["price"] = Decimal("1300")

        result = await queue.place_order(ACCOUNT, OrderSide.SELL, 10, NOW)

        assert result.payload.settled is True
        assert result.payload.realized_pnl == Decimal("1000.00")
        assert result.payload.realized_pnl_pct == Decimal("8.33")
        assert await ledger.get_balance(ACCOUNT, CURRENCY) == Decimal("113000.00")
        assert await test_database.get_pending_orders() == []
