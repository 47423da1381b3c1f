"""Probability-weighted intraday pattern selection."""
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Optional

import structlog

from bourse.core.models import PatternCategory
from bourse.market.patterns import patterns_in
from bourse.utils.randomness import RandomSource

logger = structlog.get_logger(__name__)

CATEGORY_ORDER = (PatternCategory.BULLISH, PatternCategory.BEARISH, PatternCategory.NEUTRAL)


@dataclass
class SelectorParameters:
    """Tuning of pattern rotation and category weighting."""
    min_dwell_hours: float = 1.0
    max_dwell_hours: float = 6.0
    max_dwell_before_forced_hours: float = 30.0
    deviation_threshold: float = 0.05
    deviation_full_scale: float = 0.3
    max_deviation_shift: float = 0.45
    end_phase_start: float = 0.8
    max_end_phase_shift: float = 0.2


@dataclass
class ActivePattern:
    """The pattern currently shaping the intraday path (runtime only)."""
    pattern_id: str
    last_switch: datetime
    next_switch: datetime
    start_price_at_switch: Decimal

    def progress(self, now: datetime) -> float:
        """Elapsed fraction of the dwell window, clamped to [0, 1]."""
        window = (self.next_switch - self.last_switch).total_seconds()
        if window <= 0:
            return 1.0
        elapsed = (now - self.last_switch).total_seconds()
        return max(0.0, min(1.0, elapsed / window))


class PatternSelector:
    """
    Picks the next intraday pattern.

    A category is drawn first, weighted toward the direction the price must
    travel to reach the macro target; a pattern is then drawn uniformly from
    that category.
    """

    def __init__(self, rng: RandomSource, params: Optional[SelectorParameters] = None):
        self.rng = rng
        self.params = params or SelectorParameters()
        self.active: Optional[ActivePattern] = None

    def category_weights(
        self,
        current_price: Decimal,
        target_price: Decimal,
        cycle_progress: float
    ) -> Dict[PatternCategory, float]:
        """Normalized probability of each category."""
        p = self.params
        weights = {category: 1 / 3 for category in CATEGORY_ORDER}

        deviation = float((target_price - current_price) / current_price)
        if abs(deviation) <= p.deviation_threshold:
            return weights

        favored = PatternCategory.BULLISH if deviation > 0 else PatternCategory.BEARISH
        others = [c for c in CATEGORY_ORDER if c != favored]

        shift = p.max_deviation_shift * min(abs(deviation) / p.deviation_full_scale, 1.0)
        weights[favored] += shift
        for category in others:
            weights[category] -= shift / 2

        if cycle_progress > p.end_phase_start:
            ramp = (cycle_progress - p.end_phase_start) / (1 - p.end_phase_start)
            weights[favored] += p.max_end_phase_shift * min(ramp, 1.0)

        total = sum(weights.values())
        return {category: weight / total for category, weight in weights.items()}

    def choose(
        self,
        current_price: Decimal,
        target_price: Decimal,
        cycle_progress: float
    ) -> str:
        """Draw a pattern id. Always returns a catalog id."""
        weights = self.category_weights(current_price, target_price, cycle_progress)
        category = self.rng.weighted_choice(
            CATEGORY_ORDER, [weights[candidate] for candidate in CATEGORY_ORDER]
        )
        return self.rng.choice(patterns_in(category)).id

    def needs_rotation(self, now: datetime) -> bool:
        if self.active is None:
            return True
        if now >= self.active.next_switch:
            return True
        forced_after = timedelta(hours=self.params.max_dwell_before_forced_hours)
        return now - self.active.last_switch > forced_after

    def rotate(
        self,
        now: datetime,
        current_price: Decimal,
        target_price: Decimal,
        cycle_progress: float,
        reason: str = "dwell_expired"
    ) -> ActivePattern:
        """Switch to a freshly drawn pattern with a new random dwell."""
        previous = self.active.pattern_id if self.active else None
        pattern_id = self.choose(current_price, target_price, cycle_progress)
        dwell_hours = self.rng.uniform(self.params.min_dwell_hours, self.params.max_dwell_hours)

        self.active = ActivePattern(
            pattern_id=pattern_id,
            last_switch=now,
            next_switch=now + timedelta(hours=dwell_hours),
            start_price_at_switch=current_price
        )

        logger.info(
            "selector.pattern_switched",
            reason=reason,
            previous=previous,
            pattern=pattern_id,
            next_switch=self.active.next_switch.isoformat()
        )
        return self.active
