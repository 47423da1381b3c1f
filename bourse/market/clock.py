"""Market clock: trading-window resolution and time sources."""
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo

import structlog

from bourse.core.config import MarketConfig
from bourse.core.models import MarketStatus, utcnow

logger = structlog.get_logger(__name__)

# datetime.weekday(): Saturday and Sunday
WEEKEND_DAYS = (5, 6)


class SystemClock:
    """Wall-clock time as naive UTC."""

    def now(self) -> datetime:
        return utcnow()


class VirtualClock:
    """Manually advanced clock for tests and simulations."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or utcnow()

    def now(self) -> datetime:
        return self._now

    def set(self, when: datetime):
        self._now = when

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now


class MarketClock:
    """
    Decides whether the market is open and detects opening transitions.

    Resolution order for is_open():
    1. Forced status from configuration (open / close)
    2. Persisted admin override (open / close / auto)
    3. Weekday and trading-hour window in the market timezone
    """

    def __init__(self, config: MarketConfig):
        self.config = config
        self.tz = ZoneInfo(config.market_timezone)
        self.admin_override: MarketStatus = MarketStatus.AUTO
        self._was_open = False

    def to_local(self, now: datetime) -> datetime:
        return now.replace(tzinfo=timezone.utc).astimezone(self.tz)

    def in_trading_window(self, now: datetime) -> bool:
        local = self.to_local(now)
        if local.weekday() in WEEKEND_DAYS:
            return False
        return self.config.open_hour <= local.hour < self.config.close_hour

    def is_open(self, now: datetime) -> bool:
        forced = MarketStatus(self.config.market_status)
        if forced == MarketStatus.OPEN:
            return True
        if forced == MarketStatus.CLOSE:
            return False

        if self.admin_override == MarketStatus.OPEN:
            return True
        if self.admin_override == MarketStatus.CLOSE:
            return False

        return self.in_trading_window(now)

    def observe(self, now: datetime) -> Tuple[bool, bool]:
        """
        Evaluate the market state for a tick.

        Returns:
            (is_open, just_opened) where just_opened marks a closed->open transition
        """
        is_open = self.is_open(now)
        just_opened = is_open and not self._was_open
        self._was_open = is_open
        if just_opened:
            logger.info("clock.market_opened", time=now.isoformat())
        return is_open, just_opened

    def set_override(self, status: MarketStatus, now: datetime) -> bool:
        """
        Apply an admin override.

        Returns:
            True when the override opened a previously closed market
        """
        was_open = self.is_open(now)
        self.admin_override = status
        opened = False
        if status == MarketStatus.OPEN and not was_open:
            self._was_open = True
            opened = True
        elif status == MarketStatus.CLOSE:
            self._was_open = False
        logger.info("clock.override_set", status=status.value, opened=opened)
        return opened

    def day_progress(self, now: datetime) -> float:
        """Elapsed fraction of today's trading window, clamped to [0, 1]."""
        local = self.to_local(now)
        day_start = local.replace(hour=self.config.open_hour, minute=0, second=0, microsecond=0)
        day_end = local.replace(hour=self.config.close_hour, minute=0, second=0, microsecond=0)
        duration = (day_end - day_start).total_seconds()
        if duration <= 0:
            return 0.5
        elapsed = (local - day_start).total_seconds()
        return max(0.0, min(1.0, elapsed / duration))

    def next_open(self, now: datetime) -> datetime:
        """Start of the next trading window, as naive UTC."""
        local = self.to_local(now)
        candidate = local.replace(hour=self.config.open_hour, minute=0, second=0, microsecond=0)
        if candidate <= local:
            candidate += timedelta(days=1)
        while candidate.weekday() in WEEKEND_DAYS:
            candidate += timedelta(days=1)
        return candidate.astimezone(timezone.utc).replace(tzinfo=None)
