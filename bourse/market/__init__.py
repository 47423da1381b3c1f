"""Price simulation: patterns, regulation, selection, ticking and the clock."""

from bourse.market.clock import MarketClock, SystemClock, VirtualClock
from bourse.market.macro import MacroParameters, MacroRegulationController
from bourse.market.patterns import PATTERNS, PatternDescriptor, get_pattern
from bourse.market.pricing import PriceTickEngine, PricingParameters
from bourse.market.selector import ActivePattern, PatternSelector, SelectorParameters

__all__ = [
    "ActivePattern",
    "MacroParameters",
    "MacroRegulationController",
    "MarketClock",
    "PATTERNS",
    "PatternDescriptor",
    "PatternSelector",
    "PriceTickEngine",
    "PricingParameters",
    "SelectorParameters",
    "SystemClock",
    "VirtualClock",
    "get_pattern",
]
