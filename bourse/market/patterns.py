"""Intraday pattern library.

Each pattern maps progress through its dwell window (0..1) to a
dimensionless directional offset, roughly within [-1, 1]. The price engine
only uses the slope of a pattern between two nearby progress values, so a
pattern's absolute level never moves the price by itself.

Shapes are continuous and built from sinusoids and linear segments. The
catalog is fixed: 8 bullish, 8 bearish and 9 neutral patterns.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, List

from bourse.core.models import PatternCategory

HALF_PI = math.pi / 2


@dataclass(frozen=True)
class PatternDescriptor:
    """An immutable catalog entry.

    Attributes:
        id: Stable identifier
        name: Display name
        category: Directional family used by the selector
        shape: progress -> offset
    """
    id: str
    name: str
    category: PatternCategory
    shape: Callable[[float], float]

    def __call__(self, progress: float) -> float:
        return self.shape(max(0.0, min(1.0, progress)))


# =============================================================================
# Bullish shapes
# =============================================================================

def steady_climb(p: float) -> float:
    return math.sin(p * HALF_PI) * 0.8 + math.sin(p * math.pi * 3) * 0.1


def stair_up(p: float) -> float:
    step = min(math.floor(p * 4), 4)
    in_step = p * 4 - step
    if in_step < 0.7:
        move = math.sin(in_step / 0.7 * HALF_PI) * 0.3
    else:
        move = 0.3 - (in_step - 0.7) / 0.3 * 0.05
    return step * 0.25 + move


def late_rally(p: float) -> float:
    if p < 0.7:
        return math.sin(p / 0.7 * math.pi * 2) * 0.2
    return (p - 0.7) / 0.3


def v_recovery(p: float) -> float:
    if p < 0.25:
        return -math.sin(p / 0.25 * HALF_PI) * 0.8
    return -0.8 + (p - 0.25) / 0.75 * 1.6


def double_bottom(p: float) -> float:
    if p < 0.25:
        return -math.sin(p / 0.25 * HALF_PI) * 0.8
    if p < 0.5:
        return -0.8 + math.sin((p - 0.25) / 0.25 * HALF_PI) * 0.5
    if p < 0.75:
        return -0.3 - math.sin((p - 0.5) / 0.25 * HALF_PI) * 0.5
    return -0.8 + (p - 0.75) / 0.25 * 1.2


def breakout_up(p: float) -> float:
    if p < 0.5:
        return math.sin(p * math.pi * 4) * 0.1
    return (p - 0.5) / 0.5 * 0.9


def cup_and_handle(p: float) -> float:
    if p < 0.6:
        return -math.sin(p / 0.6 * math.pi) * 0.5
    if p < 0.8:
        return -math.sin((p - 0.6) / 0.2 * math.pi) * 0.15
    return (p - 0.8) / 0.2 * 0.8


def opening_surge(p: float) -> float:
    if p < 0.3:
        return math.sin(p / 0.3 * HALF_PI) * 0.9
    return 0.9 + math.sin((p - 0.3) / 0.7 * math.pi * 2) * 0.1


# =============================================================================
# Bearish shapes
# =============================================================================

def steady_decline(p: float) -> float:
    return -math.sin(p * HALF_PI) * 0.8 + math.sin(p * math.pi * 3) * 0.1


def stair_down(p: float) -> float:
    return -stair_up(p)


def late_dive(p: float) -> float:
    if p < 0.7:
        return math.sin(p / 0.7 * HALF_PI) * 0.4
    return 0.4 - (p - 0.7) / 0.3 * 1.2


def inverted_v(p: float) -> float:
    if p < 0.4:
        return math.sin(p / 0.4 * HALF_PI) * 0.6
    return 0.6 - (p - 0.4) / 0.6 * 1.4


def double_top(p: float) -> float:
    return -double_bottom(p)


def fade_after_open(p: float) -> float:
    if p < 0.3:
        return math.sin(p / 0.3 * HALF_PI) * 0.8
    return 0.8 - (p - 0.3) / 0.7 * 1.4


def breakdown(p: float) -> float:
    return -breakout_up(p)


def head_and_shoulders(p: float) -> float:
    if p < 0.2:
        return math.sin(p / 0.2 * math.pi) * 0.4
    if p < 0.5:
        return math.sin((p - 0.2) / 0.3 * math.pi) * 0.7
    if p < 0.7:
        return math.sin((p - 0.5) / 0.2 * math.pi) * 0.4
    return -(p - 0.7) / 0.3 * 0.8


# =============================================================================
# Neutral shapes
# =============================================================================

def consolidation(p: float) -> float:
    return math.sin(p * math.pi * 4) * 0.3 + math.sin(p * math.pi * 7) * 0.15


def round_trip(p: float) -> float:
    return math.sin(p * math.pi) * 0.6


def dip_and_recover(p: float) -> float:
    return -math.sin(p * math.pi) * 0.6


def tight_range(p: float) -> float:
    return math.sin(p * math.pi * 6) * 0.15


def wide_swing(p: float) -> float:
    return math.sin(p * math.pi * 2) * 0.5


def reverse_swing(p: float) -> float:
    return -math.sin(p * math.pi * 2) * 0.5


def converging_triangle(p: float) -> float:
    return math.sin(p * math.pi * 6) * 0.5 * (1 - p)


def expanding_triangle(p: float) -> float:
    return math.sin(p * math.pi * 6) * 0.5 * p


def midday_spike(p: float) -> float:
    return math.exp(-(((p - 0.5) / 0.1) ** 2)) * 0.6


# =============================================================================
# Catalog
# =============================================================================

_CATALOG: List[PatternDescriptor] = [
    PatternDescriptor("steady_climb", "Steady Climb", PatternCategory.BULLISH, steady_climb),
    PatternDescriptor("stair_up", "Stair Up", PatternCategory.BULLISH, stair_up),
    PatternDescriptor("late_rally", "Late Rally", PatternCategory.BULLISH, late_rally),
    PatternDescriptor("v_recovery", "V Recovery", PatternCategory.BULLISH, v_recovery),
    PatternDescriptor("double_bottom", "Double Bottom", PatternCategory.BULLISH, double_bottom),
    PatternDescriptor("breakout_up", "Upside Breakout", PatternCategory.BULLISH, breakout_up),
    PatternDescriptor("cup_and_handle", "Cup and Handle", PatternCategory.BULLISH, cup_and_handle),
    PatternDescriptor("opening_surge", "Opening Surge", PatternCategory.BULLISH, opening_surge),
    PatternDescriptor("steady_decline", "Steady Decline", PatternCategory.BEARISH, steady_decline),
    PatternDescriptor("stair_down", "Stair Down", PatternCategory.BEARISH, stair_down),
    PatternDescriptor("late_dive", "Late Dive", PatternCategory.BEARISH, late_dive),
    PatternDescriptor("inverted_v", "Inverted V", PatternCategory.BEARISH, inverted_v),
    PatternDescriptor("double_top", "Double Top", PatternCategory.BEARISH, double_top),
    PatternDescriptor("fade_after_open", "Fade After Open", PatternCategory.BEARISH, fade_after_open),
    PatternDescriptor("breakdown", "Downside Breakdown", PatternCategory.BEARISH, breakdown),
    PatternDescriptor("head_and_shoulders", "Head and Shoulders", PatternCategory.BEARISH, head_and_shoulders),
    PatternDescriptor("consolidation", "Consolidation", PatternCategory.NEUTRAL, consolidation),
    PatternDescriptor("round_trip", "Round Trip", PatternCategory.NEUTRAL, round_trip),
    PatternDescriptor("dip_and_recover", "Dip and Recover", PatternCategory.NEUTRAL, dip_and_recover),
    PatternDescriptor("tight_range", "Tight Range", PatternCategory.NEUTRAL, tight_range),
    PatternDescriptor("wide_swing", "Wide Swing", PatternCategory.NEUTRAL, wide_swing),
    PatternDescriptor("reverse_swing", "Reverse Swing", PatternCategory.NEUTRAL, reverse_swing),
    PatternDescriptor("converging_triangle", "Converging Triangle", PatternCategory.NEUTRAL, converging_triangle),
    PatternDescriptor("expanding_triangle", "Expanding Triangle", PatternCategory.NEUTRAL, expanding_triangle),
    PatternDescriptor("midday_spike", "Midday Spike", PatternCategory.NEUTRAL, midday_spike),
]

PATTERNS: Dict[str, PatternDescriptor] = {p.id: p for p in _CATALOG}


def get_pattern(pattern_id: str) -> PatternDescriptor:
    """Look up a pattern by id. Raises KeyError for unknown ids."""
    return PATTERNS[pattern_id]


def patterns_in(category: PatternCategory) -> List[PatternDescriptor]:
    """Catalog entries of one category, in catalog order."""
    return [p for p in _CATALOG if p.category == category]


def all_patterns() -> List[PatternDescriptor]:
    return list(_CATALOG)
