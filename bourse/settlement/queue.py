"""Order settlement queue.

Orders are frozen for a time proportional to their value before they
settle. An account's same-side orders settle one after another: a new order
starts its freeze when the account's latest same-side order ends.

- Buy: paid at placement, shares credited at maturity
- Sell: shares debited at placement, proceeds credited at maturity
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

import structlog

from bourse.core.config import MarketConfig
from bourse.core.models import (CommandResult, OrderReceipt, OrderSide,
                                PendingOrder, RejectReason, SettlementRecord,
                                to_money)
from bourse.settlement.cost_basis import apply_buy, apply_sell, realized_profit
from bourse.settlement.payments import PaymentProcessor
from bourse.storage.database import Database

logger = structlog.get_logger(__name__)

PriceSource = Callable[[], Awaitable[Decimal]]


class OrderSettlementQueue:
    """
    Places and settles frozen orders.

    Holding and pending-order changes of one account are serialized by a
    per-account lock. The unit price is read inside that lock.
    """

    def __init__(
        self,
        database: Database,
        payments: PaymentProcessor,
        config: MarketConfig,
        price_source: PriceSource
    ):
        self.database = database
        self.payments = payments
        self.config = config
        self.price_source = price_source
        self._account_locks: Dict[str, asyncio.Lock] = {}

    def account_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[account_id] = lock
        return lock

    def compute_freeze_minutes(self, notional: Decimal) -> float:
        """Freeze length for an order value. A zero maximum disables freezing."""
        if not self.config.freeze_enabled:
            return 0.0
        minutes = float(notional) / self.config.freeze_cost_per_minute
        minutes = min(minutes, self.config.max_freeze_minutes)
        return max(minutes, self.config.min_freeze_minutes)

    async def schedule_window(
        self,
        account_id: str,
        side: OrderSide,
        freeze_minutes: float,
        now: datetime
    ) -> Tuple[datetime, datetime]:
        """(start, end) of a new order, queued behind the latest same-side order."""
        start = now
        latest = await self.database.get_latest_pending_order(account_id, side)
        if latest is not None and latest.end_time > now:
            start = latest.end_time
        return start, start + timedelta(minutes=freeze_minutes)

    async def place_order(
        self,
        account_id: str,
        side: OrderSide,
        shares: int,
        now: datetime
    ) -> CommandResult:
        """Validate, pay or debit, and enqueue an order."""
        if isinstance(shares, bool) or not isinstance(shares, int) or shares <= 0:
            return CommandResult.reject(
                RejectReason.INVALID_INPUT, "Share count must be a positive whole number"
            )

        async with self.account_lock(account_id):
            unit_price = to_money(await self.price_source())
            if side == OrderSide.BUY:
                return await self._place_buy(account_id, shares, unit_price, now)
            return await self._place_sell(account_id, shares, unit_price, now)

    async def _place_buy(
        self,
        account_id: str,
        shares: int,
        unit_price: Decimal,
        now: datetime
    ) -> CommandResult:
        holding = await self.database.get_holding(account_id)
        held = holding.shares if holding else 0
        pending = await self.database.get_pending_shares(account_id, OrderSide.BUY)
        if held + pending + shares > self.config.max_holdings:
            return CommandResult.reject(
                RejectReason.HOLDING_LIMIT,
                f"Holding limit is {self.config.max_holdings} shares "
                f"({held} held, {pending} pending)"
            )

        notional = to_money(unit_price * shares)
        payment = await self.payments.charge(account_id, notional)
        if not payment.success:
            return CommandResult.reject(payment.reason, payment.message)

        freeze = self.compute_freeze_minutes(notional)
        try:
            start, end = await self.schedule_window(account_id, OrderSide.BUY, freeze, now)
            order = await self.database.create_pending_order(PendingOrder(
                account_id=account_id,
                side=OrderSide.BUY,
                shares=shares,
                unit_price=unit_price,
                notional=notional,
                cost_basis=notional,
                start_time=start,
                end_time=end
            ))
        except Exception:
            await self.payments.refund(account_id, payment)
            raise

        logger.info(
            "settlement.order_placed",
            account_id=account_id,
            side="buy",
            shares=shares,
            unit_price=str(unit_price),
            notional=str(notional),
            end_time=end.isoformat()
        )

        receipt = OrderReceipt(order=order, freeze_minutes=freeze)
        if order.is_matured(now):
            receipt.settled = await self._settle_locked(order, now) is not None
        return CommandResult.ok(
            f"Bought {shares} shares at {unit_price} for {notional}", receipt
        )

    async def _place_sell(
        self,
        account_id: str,
        shares: int,
        unit_price: Decimal,
        now: datetime
    ) -> CommandResult:
        holding = await self.database.get_holding(account_id)
        held = holding.shares if holding else 0
        if holding is None or held < shares:
            return CommandResult.reject(
                RejectReason.INSUFFICIENT_SHARES, f"Only {held} shares held"
            )

        remaining, sold_basis = apply_sell(holding, shares, unit_price)
        notional = to_money(unit_price * shares)
        freeze = self.compute_freeze_minutes(notional)
        start, end = await self.schedule_window(account_id, OrderSide.SELL, freeze, now)

        order = await self.database.place_sell_order(
            PendingOrder(
                account_id=account_id,
                side=OrderSide.SELL,
                shares=shares,
                unit_price=unit_price,
                notional=notional,
                cost_basis=sold_basis,
                start_time=start,
                end_time=end
            ),
            remaining
        )

        profit, profit_pct = realized_profit(notional, sold_basis)
        logger.info(
            "settlement.order_placed",
            account_id=account_id,
            side="sell",
            shares=shares,
            unit_price=str(unit_price),
            notional=str(notional),
            end_time=end.isoformat()
        )

        receipt = OrderReceipt(
            order=order,
            freeze_minutes=freeze,
            realized_pnl=profit,
            realized_pnl_pct=profit_pct
        )
        if order.is_matured(now):
            receipt.settled = await self._settle_locked(order, now) is not None
        return CommandResult.ok(
            f"Sold {shares} shares at {unit_price} for {notional}", receipt
        )

    async def process_matured(self, now: datetime) -> List[SettlementRecord]:
        """Settle every order whose freeze has ended. Safe to call repeatedly."""
        records = []
        for order in await self.database.get_matured_orders(now):
            try:
                async with self.account_lock(order.account_id):
                    record = await self._settle_locked(order, now)
            except Exception as e:
                logger.error("settlement.order_failed", order_id=order.id, error=str(e))
                continue
            if record is not None:
                records.append(record)
        return records

    async def _settle_locked(self, order: PendingOrder, now: datetime) -> Optional[SettlementRecord]:
        if order.side == OrderSide.BUY:
            return await self._settle_buy(order, now)
        return await self._settle_sell(order, now)

    async def _settle_buy(self, order: PendingOrder, now: datetime) -> Optional[SettlementRecord]:
        holding = apply_buy(await self.database.get_holding(order.account_id), order)
        if not await self.database.settle_buy_order(order, holding):
            return None

        logger.info(
            "settlement.order_settled",
            order_id=order.id,
            account_id=order.account_id,
            side="buy",
            shares=order.shares,
            holding_shares=holding.shares
        )
        return SettlementRecord(order=order, settled_at=now, holding=holding)

    async def _settle_sell(self, order: PendingOrder, now: datetime) -> Optional[SettlementRecord]:
        if not await self.database.claim_pending_order(order.id):
            return None

        if not await self.payments.credit(order.account_id, order.notional):
            await self.database.restore_pending_order(order)
            logger.error(
                "settlement.credit_failed",
                order_id=order.id,
                account_id=order.account_id,
                amount=str(order.notional)
            )
            return None

        profit, profit_pct = realized_profit(order.notional, order.cost_basis)
        logger.info(
            "settlement.order_settled",
            order_id=order.id,
            account_id=order.account_id,
            side="sell",
            shares=order.shares,
            proceeds=str(order.notional),
            profit=str(profit)
        )
        return SettlementRecord(
            order=order,
            settled_at=now,
            realized_pnl=profit,
            realized_pnl_pct=profit_pct
        )
