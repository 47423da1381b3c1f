"""Macro regulation: the single medium-term price target cycle."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Optional, Tuple

import structlog
from pydantic import ValidationError

from bourse.core.models import CENT, MacroMode, MacroState, to_money
from bourse.storage.database import Database
from bourse.utils.randomness import RandomSource

logger = structlog.get_logger(__name__)


@dataclass
class MacroParameters:
    """Tuning of the regulation cycle.

    Attributes:
        auto_cycle_hours: Length of an auto cycle
        auto_fluctuation: Max relative distance of a random auto target
        target_band: Max relative distance of any target from the cycle start
        default_manual_hours: Duration of a manual cycle when none is given
    """
    auto_cycle_hours: float = 168.0
    auto_fluctuation: float = 0.25
    target_band: float = 0.5
    default_manual_hours: float = 24.0


class MacroRegulationController:
    """
    Owns the live regulation cycle.

    - ensure_current(): called every tick; replaces an absent, corrupt or
      expired cycle with a fresh auto cycle
    - set_target(): admin override starting a manual cycle

    Manual cycles expire exactly like auto ones and always roll into a new
    auto cycle, so the controller never stalls.
    """

    def __init__(
        self,
        database: Database,
        rng: RandomSource,
        params: Optional[MacroParameters] = None
    ):
        self.database = database
        self.rng = rng
        self.params = params or MacroParameters()
        self.state: Optional[MacroState] = None

    async def load(self) -> Optional[MacroState]:
        """Read the persisted cycle. Corrupt rows read as absent."""
        fields = await self.database.get_macro_state_fields()
        if fields is None or all(value is None for value in fields.values()):
            self.state = None
            return None
        try:
            self.state = MacroState(**fields)
        except (ValidationError, TypeError) as e:
            logger.warning("macro.corrupt_state", error=str(e))
            self.state = None
        return self.state

    async def ensure_current(self, now: datetime, current_price: Decimal) -> MacroState:
        """Return the live cycle, regenerating it when needed."""
        state = await self.load()
        if state is None or state.is_expired(now):
            previous_mode = state.mode.value if state else None
            state = self.new_auto_cycle(now, current_price)
            await self.database.save_macro_state(state)
            self.state = state
            logger.info(
                "macro.auto_cycle_started",
                previous_mode=previous_mode,
                start_price=str(state.start_price),
                target_price=str(state.target_price),
                end_time=state.end_time.isoformat()
            )
        return state

    def new_auto_cycle(self, now: datetime, current_price: Decimal) -> MacroState:
        fluctuation = self.params.auto_fluctuation
        ratio = 1 + self.rng.uniform(-fluctuation, fluctuation)
        target = self._clamp_to_band(Decimal(str(float(current_price) * ratio)), current_price)
        return MacroState(
            cycle_start=now,
            start_price=current_price,
            target_price=target,
            end_time=now + timedelta(hours=self.params.auto_cycle_hours),
            mode=MacroMode.AUTO
        )

    async def set_target(
        self,
        price: Decimal,
        hours: Optional[float],
        now: datetime,
        current_price: Decimal,
        daily_open_price: Optional[Decimal] = None
    ) -> Tuple[MacroState, bool]:
        """
        Start a manual cycle toward `price`.

        The target is clamped to the intersection of the cycle band around the
        current price and the day band around the daily open price.

        Returns:
            (new state, whether the requested price was clamped)
        """
        duration = hours or self.params.default_manual_hours
        lower, upper = self.target_bounds(current_price, daily_open_price)
        target = to_money(min(max(price, lower), upper))
        clamped = target != to_money(price)

        state = MacroState(
            cycle_start=now,
            start_price=current_price,
            target_price=target,
            end_time=now + timedelta(hours=duration),
            mode=MacroMode.MANUAL
        )
        await self.database.save_macro_state(state)
        self.state = state

        logger.info(
            "macro.manual_cycle_started",
            requested=str(price),
            target_price=str(target),
            clamped=clamped,
            hours=duration
        )
        return state, clamped

    def target_bounds(
        self,
        start_price: Decimal,
        daily_open_price: Optional[Decimal] = None
    ) -> Tuple[Decimal, Decimal]:
        band = Decimal(str(self.params.target_band))
        day_base = daily_open_price if daily_open_price is not None else start_price
        upper = min(start_price * (1 + band), day_base * (1 + band))
        lower = max(start_price * (1 - band), day_base * (1 - band))
        if lower > upper:
            lower, upper = start_price * (1 - band), start_price * (1 + band)
        return lower.quantize(CENT, ROUND_CEILING), upper.quantize(CENT, ROUND_FLOOR)

    def _clamp_to_band(self, target: Decimal, current_price: Decimal) -> Decimal:
        lower, upper = self.target_bounds(current_price)
        return to_money(min(max(target, lower), upper))
