"""Price tick engine - the single owner of the traded price.

Each tick composes three returns:
- Pattern return: slope of the active intraday pattern, amplified when the
  price is far from the macro target
- Mean-reversion return: pull toward the straight line from the cycle start
  price to the target, strengthened in the final fifth of the cycle
- Random-walk return: Box-Muller noise scaled by a U-shaped intraday
  volatility curve

The composed price is then soft-landed and hard-clamped against the cycle
(week) band and the day band.
"""
import asyncio
import math
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Optional, Tuple

import structlog

from bourse.core.config import MarketConfig
from bourse.core.models import CENT, MacroState, to_money
from bourse.market.clock import MarketClock
from bourse.market.macro import MacroRegulationController
from bourse.market.patterns import get_pattern
from bourse.market.selector import PatternSelector
from bourse.storage.database import Database
from bourse.utils.randomness import RandomSource

logger = structlog.get_logger(__name__)


@dataclass
class PricingParameters:
    """Tuning of the per-tick return model.

    Attributes:
        pattern_epsilon: Progress step used to take the pattern slope
        pattern_scale: Weight of the pattern slope
        reversion_strength: Base pull toward the track price per tick
        end_phase_boost: Extra pull reached at the end of the cycle
        end_phase_start: Cycle progress where the extra pull starts
        noise_scale: Std-dev of the random return before the volatility curve
        week_band: Relative band around the cycle start price
        soft_zone: Fraction of a bound where soft landing applies
    """
    pattern_epsilon: float = 0.01
    pattern_scale: float = 0.15
    reversion_strength: float = 0.02
    end_phase_boost: float = 0.05
    end_phase_start: float = 0.8
    noise_scale: float = 0.0065
    week_band: float = 0.5
    soft_zone: float = 0.05


@dataclass
class TickComponents:
    """Breakdown of the last computed tick."""
    time: datetime
    pattern_id: str
    pattern_return: float
    reversion_return: float
    random_return: float
    raw_price: float
    lower_limit: Decimal
    upper_limit: Decimal
    price: Decimal

    @property
    def total_return(self) -> float:
        return self.pattern_return + self.reversion_return + self.random_return


def intraday_volatility(day_progress: float) -> float:
    """U-shaped curve: high at the open, low at midday, rising into the close."""
    morning = math.exp(-8 * day_progress)
    afternoon = math.exp(-8 * (1 - day_progress))
    return 0.3 + morning * 0.5 + afternoon * 0.4


class PriceTickEngine:
    """
    Advances the traded price once per tick.

    All reads and writes of the current price go through one asyncio lock.
    """

    def __init__(
        self,
        database: Database,
        config: MarketConfig,
        clock: MarketClock,
        macro: MacroRegulationController,
        selector: PatternSelector,
        rng: RandomSource,
        params: Optional[PricingParameters] = None
    ):
        self.database = database
        self.config = config
        self.clock = clock
        self.macro = macro
        self.selector = selector
        self.rng = rng
        self.params = params or PricingParameters()

        self._price: Decimal = config.initial_price_decimal
        self.daily_open_price: Optional[Decimal] = None
        self.last_tick: Optional[TickComponents] = None
        self._lock = asyncio.Lock()

    @property
    def price(self) -> Decimal:
        """Last published price, read without the lock."""
        return self._price

    async def current_price(self) -> Decimal:
        async with self._lock:
            return self._price

    async def load(self, now: datetime) -> Decimal:
        """Restore the price from history, seeding the initial price if empty."""
        async with self._lock:
            latest = await self.database.get_latest_price_point()
            if latest is not None:
                self._price = to_money(latest.price)
                logger.info("pricing.restored", price=str(self._price), time=latest.time.isoformat())
            else:
                self._price = self.config.initial_price_decimal
                await self.database.add_price_point(self._price, now)
                logger.info("pricing.seeded", price=str(self._price))
            return self._price

    async def advance(self, now: datetime) -> Optional[Decimal]:
        """
        Compute and publish the next price.

        Returns:
            The new price, or None when the tick was skipped
        """
        async with self._lock:
            state = await self.macro.ensure_current(now, self._price)
            cycle_progress = state.progress(now)

            if self.selector.needs_rotation(now):
                self.selector.rotate(now, self._price, state.target_price, cycle_progress)
            active = self.selector.active

            try:
                pattern = get_pattern(active.pattern_id)
            except KeyError:
                logger.error("pricing.unknown_pattern", pattern=active.pattern_id)
                return None

            current = float(self._price)
            target = float(state.target_price)
            deviation = (target - current) / current

            pattern_progress = active.progress(now)
            slope = pattern(pattern_progress) - pattern(
                max(0.0, pattern_progress - self.params.pattern_epsilon)
            )
            pattern_return = slope * self.params.pattern_scale * (1 + 2 * abs(deviation))

            reversion_return = self.reversion_return(state, cycle_progress)

            volatility = intraday_volatility(self.clock.day_progress(now))
            random_return = self.rng.standard_normal() * self.params.noise_scale * volatility

            total_return = pattern_return + reversion_return + random_return
            raw_price = current * (1 + total_return)

            lower, upper = self.price_limits(state)
            new_price = self.clamp_price(raw_price, lower, upper)

            await self.database.add_price_point(new_price, now)
            self._price = new_price
            self.last_tick = TickComponents(
                time=now,
                pattern_id=pattern.id,
                pattern_return=pattern_return,
                reversion_return=reversion_return,
                random_return=random_return,
                raw_price=raw_price,
                lower_limit=lower,
                upper_limit=upper,
                price=new_price
            )

            logger.debug(
                "pricing.tick",
                price=str(new_price),
                pattern=pattern.id,
                total_return=round(total_return, 6),
                target=str(state.target_price)
            )
            return new_price

    def reversion_return(self, state: MacroState, cycle_progress: float) -> float:
        current = float(self._price)
        start = float(state.start_price)
        track = start + (float(state.target_price) - start) * cycle_progress

        p = self.params
        ramp = (cycle_progress - p.end_phase_start) / (1 - p.end_phase_start)
        boost = p.end_phase_boost * max(0.0, min(1.0, ramp))
        return (track - current) / current * (p.reversion_strength + boost)

    def price_limits(self, state: MacroState) -> Tuple[Decimal, Decimal]:
        """
        Intersection of the week band (around the cycle start price) and the
        day band (around the daily open price).

        Returns:
            (lower, upper) on the cent grid; the week band wins if the
            intersection is empty
        """
        band = Decimal(str(self.params.week_band))
        ratio = Decimal(str(self.config.day_limit_ratio))
        start = state.start_price
        day_base = self.daily_open_price if self.daily_open_price is not None else start

        week_lower, week_upper = start * (1 - band), start * (1 + band)
        upper = min(week_upper, day_base * (1 + ratio))
        lower = max(week_lower, day_base * (1 - ratio))
        if lower > upper:
            lower, upper = week_lower, week_upper

        return lower.quantize(CENT, ROUND_CEILING), upper.quantize(CENT, ROUND_FLOOR)

    def clamp_price(self, raw_price: float, lower: Decimal, upper: Decimal) -> Decimal:
        """Soft landing near either bound, then hard clamp and the price floor."""
        zone = self.params.soft_zone
        hi, lo = float(upper), float(lower)
        price = raw_price

        soft_upper = hi * (1 - zone)
        if price > soft_upper:
            overshoot = (price - soft_upper) / (hi * zone)
            price = soft_upper + hi * zone * math.tanh(overshoot)

        soft_lower = lo * (1 + zone)
        if price < soft_lower:
            undershoot = (soft_lower - price) / (lo * zone)
            price = soft_lower - lo * zone * math.tanh(undershoot)

        price = max(lo, min(hi, price))
        result = min(max(to_money(price), lower), upper)
        return max(result, to_money(self.config.price_floor))

    async def on_market_open(self, now: datetime):
        """Snapshot the daily open price and rotate the pattern."""
        async with self._lock:
            self.daily_open_price = self._price
            logger.info("pricing.daily_open", price=str(self._price))
            await self._rotate_locked(now, "market_open")

    async def force_rotation(self, now: datetime, reason: str = "admin"):
        async with self._lock:
            await self._rotate_locked(now, reason)

    async def _rotate_locked(self, now: datetime, reason: str):
        state = await self.macro.ensure_current(now, self._price)
        self.selector.rotate(now, self._price, state.target_price, state.progress(now), reason)

    async def set_macro_target(
        self,
        price: Decimal,
        hours: Optional[float],
        now: datetime
    ) -> Tuple[MacroState, bool]:
        """Start a manual macro cycle from the current price."""
        async with self._lock:
            return await self.macro.set_target(
                price, hours, now, self._price, self.daily_open_price
            )

    async def fork(self, database: Database) -> "PriceTickEngine":
        """
        Copy of this engine over another store, seeded with the current price,
        daily open, macro cycle and active pattern.

        Ticks of the copy leave this engine and its store untouched.
        """
        async with self._lock:
            macro = MacroRegulationController(database, self.rng, self.macro.params)
            state = await self.macro.load()
            if state is not None:
                await database.save_macro_state(state)
                macro.state = state

            selector = PatternSelector(self.rng, self.selector.params)
            if self.selector.active is not None:
                selector.active = replace(self.selector.active)

            copy = PriceTickEngine(
                database, self.config, self.clock, macro, selector, self.rng, self.params
            )
            copy._price = self._price
            copy.daily_open_price = self.daily_open_price
            return copy
