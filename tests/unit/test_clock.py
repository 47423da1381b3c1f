"""Unit tests for the market clock."""
from datetime import datetime, timedelta

import pytest

from bourse.core.models import MarketStatus
from bourse.market.clock import MarketClock, VirtualClock

from conftest import MONDAY_MORNING, SATURDAY_MORNING, make_market_config


@pytest.fixture
def auto_clock():
    return MarketClock(make_market_config(market_status="auto"))


class TestTradingWindow:
    """Tests for open/closed resolution."""

    def test_open_on_weekday_inside_hours(self, auto_clock):
        assert auto_clock.is_open(MONDAY_MORNING)

    def test_closed_on_weekend(self, auto_clock):
        assert not auto_clock.is_open(SATURDAY_MORNING)

    def test_hours_are_half_open(self, auto_clock):
        assert auto_clock.is_open(datetime(2026, 3, 2, 8, 0))
        assert not auto_clock.is_open(datetime(2026, 3, 2, 7, 59))
        assert auto_clock.is_open(datetime(2026, 3, 2, 22, 59))
        assert not auto_clock.is_open(datetime(2026, 3, 2, 23, 0))

    def test_market_timezone(self):
        clock = MarketClock(make_market_config(market_status="auto", market_timezone="Asia/Shanghai"))
        # 01:00 UTC is 09:00 in Shanghai
        assert clock.is_open(datetime(2026, 3, 2, 1, 0))
        # 23:30 UTC Sunday is 07:30 Monday in Shanghai
        assert not clock.is_open(datetime(2026, 3, 1, 23, 30))

    def test_forced_config_status_wins(self):
        forced_open = MarketClock(make_market_config(market_status="open"))
        forced_open.admin_override = MarketStatus.CLOSE
        assert forced_open.is_open(SATURDAY_MORNING)

        forced_closed = MarketClock(make_market_config(market_status="close"))
        forced_closed.admin_override = MarketStatus.OPEN
        assert not forced_closed.is_open(MONDAY_MORNING)

    def test_admin_override(self, auto_clock):
        auto_clock.admin_override = MarketStatus.CLOSE
        assert not auto_clock.is_open(MONDAY_MORNING)

        auto_clock.admin_override = MarketStatus.OPEN
        assert auto_clock.is_open(SATURDAY_MORNING)


class TestTransitions:
    """Tests for closed->open detection."""

    def test_observe_reports_opening_once(self, auto_clock):
        assert auto_clock.observe(datetime(2026, 3, 2, 7, 58)) == (False, False)
        assert auto_clock.observe(datetime(2026, 3, 2, 8, 0)) == (True, True)
        assert auto_clock.observe(datetime(2026, 3, 2, 8, 2)) == (True, False)
        assert auto_clock.observe(datetime(2026, 3, 2, 23, 0)) == (False, False)
        assert auto_clock.observe(datetime(2026, 3, 3, 8, 0)) == (True, True)

    def test_open_override_while_closed(self, auto_clock):
        auto_clock.observe(SATURDAY_MORNING)

        assert auto_clock.set_override(MarketStatus.OPEN, SATURDAY_MORNING) is True
        # The override already counted as the opening
        assert auto_clock.observe(SATURDAY_MORNING + timedelta(minutes=2)) == (True, False)

    def test_open_override_while_open(self, auto_clock):
        auto_clock.observe(MONDAY_MORNING)
        assert auto_clock.set_override(MarketStatus.OPEN, MONDAY_MORNING) is False

    def test_close_override_resets_tracker(self, auto_clock):
        auto_clock.observe(MONDAY_MORNING)
        auto_clock.set_override(MarketStatus.CLOSE, MONDAY_MORNING)
        assert auto_clock.observe(MONDAY_MORNING) == (False, False)

        auto_clock.set_override(MarketStatus.AUTO, MONDAY_MORNING)
        assert auto_clock.observe(MONDAY_MORNING + timedelta(minutes=2)) == (True, True)


class TestClockHelpers:
    """Tests for day progress and next open."""

    def test_day_progress(self, auto_clock):
        assert auto_clock.day_progress(datetime(2026, 3, 2, 8, 0)) == 0.0
        assert auto_clock.day_progress(datetime(2026, 3, 2, 15, 30)) == pytest.approx(0.5)
        assert auto_clock.day_progress(datetime(2026, 3, 2, 23, 30)) == 1.0

    def test_next_open_skips_weekend(self, auto_clock):
        friday_night = datetime(2026, 3, 6, 23, 30)
        assert auto_clock.next_open(friday_night) == datetime(2026, 3, 9, 8, 0)

    def test_next_open_same_day(self, auto_clock):
        early = datetime(2026, 3, 2, 6, 0)
        assert auto_clock.next_open(early) == datetime(2026, 3, 2, 8, 0)

    def test_virtual_clock(self):
        clock = VirtualClock(MONDAY_MORNING)
        assert clock.advance(timedelta(minutes=5)) == MONDAY_MORNING + timedelta(minutes=5)
        clock.set(SATURDAY_MORNING)
        assert clock.now() == SATURDAY_MORNING
