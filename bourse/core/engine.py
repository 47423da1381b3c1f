"""Bourse engine - orchestrates all market components."""
import asyncio
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional, Tuple, Union

import pandas as pd
import structlog

from bourse.core.config import MarketConfig, market_config
from bourse.core.models import (CommandResult, HistoryRange, HistorySummary,
                                HistoryView, HoldingView, MarketStatus,
                                OrderSide, PendingView, PricePoint,
                                RejectReason, SimulationReport, TickResult,
                                to_money)
from bourse.ledger.base import CashLedger, DemandAccountService
from bourse.market.clock import MarketClock, SystemClock
from bourse.market.macro import MacroParameters, MacroRegulationController
from bourse.market.pricing import PriceTickEngine, PricingParameters
from bourse.market.selector import PatternSelector, SelectorParameters
from bourse.settlement.payments import PaymentProcessor
from bourse.settlement.queue import OrderSettlementQueue
from bourse.storage.database import Database
from bourse.utils.randomness import RandomSource

logger = structlog.get_logger(__name__)

REALTIME_POINTS = 100
MAX_CHART_POINTS = 300


class BourseEngine:
    """
    Main market engine that wires and drives all components.

    Responsibilities:
    - Restores market state at startup
    - Runs the fixed-cadence tick loop
    - Exposes the command API (trading, admin and read commands)
    - Runs virtual-time simulations when debug is enabled
    """

    def __init__(
        self,
        database: Database,
        ledger: CashLedger,
        demand_account: Optional[DemandAccountService] = None,
        config: Optional[MarketConfig] = None,
        rng: Optional[RandomSource] = None,
        time_source=None,
        enable_debug: bool = False,
        macro_params: Optional[MacroParameters] = None,
        selector_params: Optional[SelectorParameters] = None,
        pricing_params: Optional[PricingParameters] = None
    ):
        self.database = database
        self.config = config or market_config
        self.rng = rng or RandomSource()
        self.time_source = time_source or SystemClock()
        self.enable_debug = enable_debug

        self.clock = MarketClock(self.config)
        self.macro = MacroRegulationController(database, self.rng, macro_params)
        self.selector = PatternSelector(self.rng, selector_params)
        self.pricing = PriceTickEngine(
            database, self.config, self.clock, self.macro, self.selector, self.rng, pricing_params
        )
        self.payments = PaymentProcessor(ledger, self.config.currency, demand_account)
        self.queue = OrderSettlementQueue(
            database, self.payments, self.config, self.pricing.current_price
        )

        # Control
        self._running = False
        self._main_task: Optional[asyncio.Task] = None
        self._tick_lock = asyncio.Lock()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def load_state(self):
        """Restore the override, price and macro cycle from the store."""
        now = self.time_source.now()
        self.clock.admin_override = await self.database.get_market_override()
        price = await self.pricing.load(now)
        state = await self.macro.load()
        logger.info(
            "engine.state_loaded",
            price=str(price),
            override=self.clock.admin_override.value,
            macro_mode=state.mode.value if state else None
        )

    async def start(self):
        """Start the tick loop."""
        logger.info("engine.starting")
        self._running = True
        await self.load_state()
        self._main_task = asyncio.create_task(self._main_loop())
        logger.info("engine.started", tick_interval=self.config.tick_interval_seconds)

    async def stop(self):
        """Stop the tick loop gracefully."""
        logger.info("engine.stopping")
        self._running = False

        if self._main_task:
            self._main_task.cancel()
            try:
                await self._main_task
            except asyncio.CancelledError:
                pass
            self._main_task = None

        logger.info("engine.stopped")

    async def _main_loop(self):
        """Fixed-cadence loop. Slots missed by an overrunning tick are dropped."""
        loop = asyncio.get_running_loop()
        interval = self.config.tick_interval_seconds
        next_run = loop.time()

        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error("engine.loop_error", error=str(e))

            next_run += interval
            behind = loop.time() - next_run
            if behind > 0:
                missed = int(behind // interval) + 1
                next_run += missed * interval
                logger.warning("engine.ticks_skipped", count=missed)

            await asyncio.sleep(max(0.0, next_run - loop.time()))

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        """
        Run one market tick: price update, settlement and history pruning.

        Nothing happens while the market is closed. A tick requested while
        another is running is skipped.
        """
        now = now or self.time_source.now()
        if self._tick_lock.locked():
            logger.warning("engine.tick_skipped", reason="tick_in_progress")
            return TickResult(time=now, market_open=False, skipped_reason="tick_in_progress")

        async with self._tick_lock:
            is_open, just_opened = self.clock.observe(now)
            result = TickResult(time=now, market_open=is_open, market_opened=just_opened)
            if not is_open:
                return result

            if just_opened:
                await self.pricing.on_market_open(now)

            result.price = await self.pricing.advance(now)
            if result.price is None:
                result.skipped_reason = "unknown_pattern"

            result.settlements = await self.queue.process_matured(now)

            cutoff = now - timedelta(days=self.config.history_retention_days)
            result.pruned_points = await self.database.prune_price_history(cutoff)
            if result.pruned_points:
                logger.info("engine.history_pruned", count=result.pruned_points)

            return result

    # =========================================================================
    # Trading commands
    # =========================================================================

    async def buy(self, account_id: str, shares: int) -> CommandResult:
        return await self._trade(account_id, OrderSide.BUY, shares)

    async def sell(self, account_id: str, shares: int) -> CommandResult:
        return await self._trade(account_id, OrderSide.SELL, shares)

    async def _trade(self, account_id: str, side: OrderSide, shares: int) -> CommandResult:
        if not account_id:
            return CommandResult.reject(RejectReason.INVALID_INPUT, "Account is required")
        if isinstance(shares, bool) or not isinstance(shares, int) or shares <= 0:
            return CommandResult.reject(
                RejectReason.INVALID_INPUT, "Share count must be a positive whole number"
            )

        now = self.time_source.now()
        if not self.clock.is_open(now):
            return CommandResult.reject(RejectReason.MARKET_CLOSED, self._closed_message(now))

        result = await self.queue.place_order(account_id, side, shares, now)
        if not result.success:
            logger.info(
                "engine.order_rejected",
                account_id=account_id,
                side=side.value,
                shares=shares,
                reason=result.reason.value if result.reason else None
            )
        return result

    async def get_holding(self, account_id: str) -> CommandResult:
        """Position, valuation and pending orders of an account."""
        now = self.time_source.now()
        holding = await self.database.get_holding(account_id)
        pending = await self.database.get_pending_orders(account_id)
        if holding is None and not pending:
            return CommandResult.reject(RejectReason.NO_DATA, "No holdings")

        price = await self.pricing.current_price()
        shares = holding.shares if holding else 0
        view = HoldingView(
            account_id=account_id,
            instrument_name=self.config.instrument_name,
            shares=shares,
            current_price=price,
            market_value=to_money(price * shares),
            pending=[
                PendingView(
                    side=order.side,
                    shares=order.shares,
                    unit_price=order.unit_price,
                    notional=order.notional,
                    seconds_left=order.seconds_left(now)
                )
                for order in pending
            ]
        )

        if holding is not None and holding.has_cost_basis:
            view.total_cost = holding.total_cost
            view.average_cost = holding.average_cost
            view.profit = to_money(view.market_value - holding.total_cost)
            view.profit_pct = to_money(view.profit / holding.total_cost * 100)

        return CommandResult.ok(f"{shares} shares of {self.config.instrument_name}", view)

    # =========================================================================
    # Admin commands
    # =========================================================================

    async def set_macro_target(self, price: Any, hours: Optional[float] = None) -> CommandResult:
        """Start a manual regulation cycle toward `price` over `hours`."""
        try:
            target, hours = parse_target(price, hours)
        except ValueError as e:
            return CommandResult.reject(RejectReason.INVALID_INPUT, str(e))

        state, clamped = await self.pricing.set_macro_target(target, hours, self.time_source.now())
        message = f"Target {state.target_price} until {state.end_time.isoformat()}"
        if clamped:
            message += f" (requested {to_money(target)}, clamped to the allowed band)"
        return CommandResult.ok(message, {"state": state, "clamped": clamped})

    async def force_pattern_switch(self) -> CommandResult:
        await self.pricing.force_rotation(self.time_source.now(), "admin")
        active = self.selector.active
        return CommandResult.ok(f"Switched to pattern {active.pattern_id}", active)

    async def set_market_override(self, status: Union[str, MarketStatus]) -> CommandResult:
        try:
            status = MarketStatus(status)
        except ValueError:
            return CommandResult.reject(
                RejectReason.INVALID_INPUT, "Status must be one of open, close, auto"
            )

        now = self.time_source.now()
        await self.database.set_market_override(status)
        if self.clock.set_override(status, now):
            await self.pricing.on_market_open(now)
        return CommandResult.ok(f"Market status set to {status.value}", status)

    # =========================================================================
    # Read commands
    # =========================================================================

    async def get_history(self, interval: Union[str, HistoryRange] = HistoryRange.REALTIME) -> CommandResult:
        try:
            window = HistoryRange(interval)
        except ValueError:
            return CommandResult.reject(
                RejectReason.INVALID_INPUT, "Range must be one of realtime, day, week"
            )

        now = self.time_source.now()
        if not self.clock.is_open(now):
            return CommandResult.reject(RejectReason.MARKET_CLOSED, self._closed_message(now))

        if window == HistoryRange.REALTIME:
            points = await self.database.get_price_history(limit=REALTIME_POINTS)
        elif window == HistoryRange.DAY:
            points = await self.database.get_price_history(since=now - timedelta(days=1))
        else:
            points = await self.database.get_price_history(since=now - timedelta(days=7))

        if not points:
            return CommandResult.reject(RejectReason.NO_DATA, "No price data yet")

        view = HistoryView(
            range=window,
            points=downsample(points, MAX_CHART_POINTS),
            summary=summarize_history(points)
        )
        return CommandResult.ok(f"{len(points)} points", view)

    async def get_status(self) -> CommandResult:
        now = self.time_source.now()
        state = self.macro.state
        active = self.selector.active
        pending = await self.database.get_pending_orders()
        status = {
            'running': self._running,
            'market_open': self.clock.is_open(now),
            'override': self.clock.admin_override.value,
            'price': str(await self.pricing.current_price()),
            'daily_open_price': str(self.pricing.daily_open_price) if self.pricing.daily_open_price else None,
            'macro': {
                'mode': state.mode.value,
                'start_price': str(state.start_price),
                'target_price': str(state.target_price),
                'end_time': state.end_time.isoformat(),
                'progress': round(state.progress(now), 4)
            } if state else None,
            'pattern': {
                'id': active.pattern_id,
                'next_switch': active.next_switch.isoformat()
            } if active else None,
            'pending_orders': len(pending),
            'next_open': None if self.clock.is_open(now) else self.clock.next_open(now).isoformat()
        }
        return CommandResult.ok("status", status)

    # =========================================================================
    # Debug commands (virtual time)
    # =========================================================================

    async def simulate(self, ticks: int = 1, step_seconds: float = 120) -> CommandResult:
        """
        Tick a scratch copy of the price engine `ticks` times on a virtual
        clock, ignoring market hours. The live price, history, macro cycle and
        pattern are left untouched.
        """
        if not self.enable_debug:
            return CommandResult.reject(RejectReason.DEBUG_DISABLED, "Debug mode is disabled")

        try:
            ticks = max(1, min(int(ticks or 1), 2000))
            step_seconds = max(10.0, min(float(step_seconds or 120), 3600.0))
        except (TypeError, ValueError):
            return CommandResult.reject(RejectReason.INVALID_INPUT, "Ticks and step must be numbers")

        async with self._virtual_pricing() as pricing:
            report = await self._run_virtual(pricing, self.time_source.now(), ticks, step_seconds)

        logger.info(
            "engine.simulation_finished",
            ticks=report.ticks,
            start=str(report.start_price),
            end=str(report.end_price),
            clamp_hits=report.clamp_hits
        )
        return CommandResult.ok(
            f"{report.ticks} ticks: {report.start_price} -> {report.end_price} (drift {report.drift})",
            report
        )

    async def check_manual_then_auto(
        self,
        target: Any,
        hours: Optional[float] = None,
        ticks: Optional[int] = None
    ) -> CommandResult:
        """
        Run a manual cycle to expiry in virtual time, then keep ticking and
        report whether the price still moves under the following auto cycle.

        Runs on a scratch copy of the price engine like `simulate`.
        """
        if not self.enable_debug:
            return CommandResult.reject(RejectReason.DEBUG_DISABLED, "Debug mode is disabled")

        try:
            target, _ = parse_target(target, None)
            hours = max(1.0, min(float(hours or 6), 48.0))
            ticks = max(10, min(int(ticks or 300), 5000))
        except (TypeError, ValueError) as e:
            return CommandResult.reject(RejectReason.INVALID_INPUT, str(e))
        step_seconds = 120.0

        start = self.time_source.now()
        async with self._virtual_pricing() as pricing:
            state, _ = await pricing.set_macro_target(target, hours, start)
            manual_ticks = int(hours * 3600 / step_seconds) + 1
            manual = await self._run_virtual(pricing, start, manual_ticks, step_seconds)
            resume = start + timedelta(seconds=manual_ticks * step_seconds)
            auto = await self._run_virtual(pricing, resume, ticks, step_seconds)
            auto_mode = pricing.macro.state.mode.value if pricing.macro.state else None

        moved = abs(auto.end_price - manual.end_price) >= Decimal("0.01")
        payload = {
            'target_price': state.target_price,
            'manual_end_price': manual.end_price,
            'auto_end_price': auto.end_price,
            'auto_mode': auto_mode,
            'moved': moved
        }
        if not moved:
            logger.warning("engine.price_stalled_after_manual_cycle", **{k: str(v) for k, v in payload.items()})
        return CommandResult.ok(
            f"Manual cycle ended at {manual.end_price}; {ticks} ticks later {auto.end_price}",
            payload
        )

    @asynccontextmanager
    async def _virtual_pricing(self):
        """Price engine forked onto a throwaway in-memory store."""
        scratch = Database("sqlite+aiosqlite:///:memory:", instrument_id=self.database.instrument_id)
        await scratch.initialize()
        try:
            async with self._tick_lock:
                pricing = await self.pricing.fork(scratch)
            yield pricing
        finally:
            await scratch.close()

    async def _run_virtual(
        self,
        pricing: PriceTickEngine,
        start: datetime,
        ticks: int,
        step_seconds: float
    ) -> SimulationReport:
        start_price = await pricing.current_price()
        high = low = start_price
        clamp_hits = 0
        skipped = 0

        now = start
        for _ in range(ticks):
            price = await pricing.advance(now)
            now = now + timedelta(seconds=step_seconds)
            if price is None:
                skipped += 1
                continue
            high, low = max(high, price), min(low, price)
            last = pricing.last_tick
            if price >= last.upper_limit * Decimal("0.99") or price <= last.lower_limit * Decimal("1.01"):
                clamp_hits += 1

        return SimulationReport(
            ticks=ticks,
            step_seconds=step_seconds,
            start_price=start_price,
            end_price=await pricing.current_price(),
            high=high,
            low=low,
            clamp_hits=clamp_hits,
            metadata={'skipped': skipped, 'end_time': now.isoformat()}
        )

    def _closed_message(self, now: datetime) -> str:
        return (
            f"Market is closed (weekdays {self.config.open_hour}:00-{self.config.close_hour}:00, "
            f"next open {self.clock.next_open(now).isoformat()})"
        )


def downsample(points: List[PricePoint], max_points: int) -> List[PricePoint]:
    """Every n-th point so that at most `max_points` remain."""
    if len(points) <= max_points:
        return points
    step = math.ceil(len(points) / max_points)
    return points[::step]


def summarize_history(points: List[PricePoint]) -> HistorySummary:
    prices = pd.Series([float(p.price) for p in points])
    first, latest = prices.iloc[0], prices.iloc[-1]
    high, low = prices.max(), prices.min()
    change = latest - first
    return HistorySummary(
        latest=to_money(points[-1].price),
        first=to_money(points[0].price),
        high=to_money(high),
        low=to_money(low),
        change=to_money(change),
        change_pct=to_money(change / first * 100),
        amplitude_pct=to_money((high - low) / first * 100)
    )


def parse_target(price: Any, hours: Any) -> Tuple[Decimal, Optional[float]]:
    """
    Validate a macro target request.

    Raises:
        ValueError: If the price is not a positive number or the duration is
            given but not a positive number
    """
    try:
        target = Decimal(str(price))
    except (InvalidOperation, ValueError):
        raise ValueError("Invalid target price")
    if not target.is_finite() or target <= 0:
        raise ValueError("Target price must be positive")

    if hours is None:
        return target, None
    try:
        duration = float(hours)
    except (TypeError, ValueError):
        raise ValueError("Invalid duration")
    if not math.isfinite(duration) or duration <= 0:
        raise ValueError("Duration must be positive")
    return target, duration
