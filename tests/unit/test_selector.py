"""Unit tests for the pattern selector."""
from datetime import timedelta
from decimal import Decimal

import pytest

from bourse.core.models import PatternCategory
from bourse.market.patterns import PATTERNS, get_pattern
from bourse.market.selector import CATEGORY_ORDER, ActivePattern, PatternSelector
from bourse.utils.randomness import RandomSource

from conftest import MONDAY_MORNING, StubRandom

NOW = MONDAY_MORNING


class TestCategoryWeights:
    """Tests for category probability weighting."""

    def test_uniform_near_target(self):
        selector = PatternSelector(RandomSource(seed=1))
        weights = selector.category_weights(Decimal("1200"), Decimal("1230"), 0.5)

        for category in PatternCategory:
            assert weights[category] == pytest.approx(1 / 3)

    def test_bullish_favored_below_target(self):
        selector = PatternSelector(RandomSource(seed=1))
        weights = selector.category_weights(Decimal("1000"), Decimal("1300"), 0.5)

        assert weights[PatternCategory.BULLISH] == pytest.approx(1 / 3 + 0.45)
        assert weights[PatternCategory.BEARISH] == pytest.approx(1 / 3 - 0.225)
        assert weights[PatternCategory.NEUTRAL] == pytest.approx(1 / 3 - 0.225)

    def test_bearish_favored_above_target(self):
        selector = PatternSelector(RandomSource(seed=1))
        weights = selector.category_weights(Decimal("1200"), Decimal("1080"), 0.5)

        assert weights[PatternCategory.BEARISH] > weights[PatternCategory.NEUTRAL]
        assert weights[PatternCategory.NEUTRAL] == pytest.approx(weights[PatternCategory.BULLISH])

    def test_end_phase_strengthens_favored(self):
        selector = PatternSelector(RandomSource(seed=1))
        mid = selector.category_weights(Decimal("1000"), Decimal("1300"), 0.5)
        end = selector.category_weights(Decimal("1000"), Decimal("1300"), 1.0)

        assert end[PatternCategory.BULLISH] > mid[PatternCategory.BULLISH]
        assert end[PatternCategory.BULLISH] == pytest.approx((1 / 3 + 0.45 + 0.2) / 1.2)

    @pytest.mark.parametrize("target", ["500", "1150", "1200", "1260", "3000"])
    def test_weights_are_a_distribution(self, target):
        selector = PatternSelector(RandomSource(seed=1))
        weights = selector.category_weights(Decimal("1200"), Decimal(target), 0.9)

        assert sum(weights.values()) == pytest.approx(1.0)
        assert all(w >= 0 for w in weights.values())


class TestChoose:
    """Tests for pattern draws."""

    def test_low_draw_picks_bullish(self):
        selector = PatternSelector(StubRandom([0.0, 0.0]))
        pattern_id = selector.choose(Decimal("1000"), Decimal("1300"), 0.5)
        assert get_pattern(pattern_id).category == PatternCategory.BULLISH

    def test_high_draw_picks_neutral(self):
        selector = PatternSelector(StubRandom([0.999, 0.0]))
        pattern_id = selector.choose(Decimal("1000"), Decimal("1300"), 0.5)
        assert get_pattern(pattern_id).category == PatternCategory.NEUTRAL

    def test_always_returns_catalog_id(self):
        selector = PatternSelector(RandomSource(seed=11))
        for _ in range(200):
            assert selector.choose(Decimal("1200"), Decimal("1500"), 0.3) in PATTERNS

    def test_direction_bias_over_many_draws(self):
        selector = PatternSelector(RandomSource(seed=5))
        bullish = sum(
            get_pattern(selector.choose(Decimal("1000"), Decimal("1400"), 0.9)).category
            == PatternCategory.BULLISH
            for _ in range(1000)
        )
        assert bullish > 600

    def test_weighted_choice_follows_weights(self):
        rng = RandomSource(seed=2)
        draws = [rng.weighted_choice(CATEGORY_ORDER, [0.8, 0.2, 0.0]) for _ in range(1000)]

        assert PatternCategory.NEUTRAL not in draws
        assert draws.count(PatternCategory.BULLISH) > 700

    def test_weighted_choice_normalizes(self):
        rng = RandomSource(seed=2)
        assert rng.weighted_choice(["only", "never"], [3.0, 0.0]) == "only"


class TestRotation:
    """Tests for dwell handling."""

    def test_needs_rotation_without_active(self):
        selector = PatternSelector(RandomSource(seed=1))
        assert selector.needs_rotation(NOW)

    def test_rotate_sets_dwell_window(self):
        selector = PatternSelector(RandomSource(seed=1))
        active = selector.rotate(NOW, Decimal("1200"), Decimal("1300"), 0.1)

        dwell = active.next_switch - active.last_switch
        assert timedelta(hours=1) <= dwell <= timedelta(hours=6)
        assert active.start_price_at_switch == Decimal("1200")
        assert not selector.needs_rotation(NOW + timedelta(minutes=30))
        assert selector.needs_rotation(active.next_switch)

    def test_forced_rotation_after_long_dwell(self):
        selector = PatternSelector(RandomSource(seed=1))
        selector.active = ActivePattern(
            pattern_id="consolidation",
            last_switch=NOW,
            next_switch=NOW + timedelta(hours=48),
            start_price_at_switch=Decimal("1200")
        )
        assert not selector.needs_rotation(NOW + timedelta(hours=29))
        assert selector.needs_rotation(NOW + timedelta(hours=31))

    def test_active_progress(self):
        active = ActivePattern(
            pattern_id="round_trip",
            last_switch=NOW,
            next_switch=NOW + timedelta(hours=2),
            start_price_at_switch=Decimal("1200")
        )
        assert active.progress(NOW - timedelta(minutes=5)) == 0.0
        assert active.progress(NOW + timedelta(hours=1)) == pytest.approx(0.5)
        assert active.progress(NOW + timedelta(hours=3)) == 1.0
