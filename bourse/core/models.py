"""Data models for the Bourse market simulator.

This module defines the records shared across the market engine:
- Macro regulation state (the single live regulation cycle)
- Price history points
- Pending (frozen) orders and holdings
- Read models returned by the command API

All monetary values use Decimal quantized to two places.
All timestamps are naive UTC datetime objects.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Quantize a float, int or Decimal to two decimal places."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# Enums
# =============================================================================

class OrderSide(str, Enum):
    """Order side - buy or sell."""
    BUY = "buy"
    SELL = "sell"


class MacroMode(str, Enum):
    """How the current regulation cycle was created."""
    AUTO = "auto"
    MANUAL = "manual"


class MarketStatus(str, Enum):
    """Market open override."""
    OPEN = "open"
    CLOSE = "close"
    AUTO = "auto"


class PatternCategory(str, Enum):
    """Directional family of an intraday pattern."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


class HistoryRange(str, Enum):
    """Time window of a history request."""
    REALTIME = "realtime"         # Latest 100 points
    DAY = "day"                   # Last 24 hours
    WEEK = "week"                 # Last 7 days


class RejectReason(str, Enum):
    """Why a command was not carried out."""
    INVALID_INPUT = "invalid_input"
    MARKET_CLOSED = "market_closed"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INSUFFICIENT_SHARES = "insufficient_shares"
    HOLDING_LIMIT = "holding_limit"
    PAYMENT_FAILED = "payment_failed"
    NO_DATA = "no_data"
    DEBUG_DISABLED = "debug_disabled"


# =============================================================================
# Persisted Records
# =============================================================================

class MacroState(BaseModel):
    """The single live regulation cycle.

    Attributes:
        cycle_start: When the cycle began
        start_price: Price current when the cycle was created
        target_price: Price the cycle steers toward
        end_time: When the cycle expires
        mode: Auto (random) or manual (admin set)
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    cycle_start: datetime = Field(..., description="Cycle start time")
    start_price: Decimal = Field(..., gt=0, description="Price at cycle creation")
    target_price: Decimal = Field(..., gt=0, description="Cycle target price")
    end_time: datetime = Field(..., description="Cycle expiry time")
    mode: MacroMode = Field(default=MacroMode.AUTO, description="Cycle mode")

    @model_validator(mode="after")
    def end_after_start(self) -> "MacroState":
        """Validate the cycle has a positive duration."""
        if self.end_time <= self.cycle_start:
            raise ValueError("end_time must be after cycle_start")
        return self

    @property
    def duration_seconds(self) -> float:
        return (self.end_time - self.cycle_start).total_seconds()

    def progress(self, now: datetime) -> float:
        """Elapsed fraction of the cycle, clamped to [0, 1]."""
        elapsed = (now - self.cycle_start).total_seconds()
        return max(0.0, min(1.0, elapsed / self.duration_seconds))

    def is_expired(self, now: datetime) -> bool:
        return now > self.end_time


class PricePoint(BaseModel):
    """One tick of the price series."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    price: Decimal = Field(..., gt=0, description="Price")
    time: datetime = Field(..., description="Tick time")
    id: Optional[int] = Field(default=None, description="Store row id")


class PendingOrder(BaseModel):
    """An order waiting out its settlement freeze.

    Attributes:
        account_id: Owning account
        side: Buy or sell
        shares: Whole number of shares
        unit_price: Price at placement
        notional: shares x unit_price, already paid (buy) or owed (sell)
        cost_basis: Basis of the shares involved, used for realized profit
        start_time: When the freeze starts counting
        end_time: When the order matures
    """
    model_config = ConfigDict(json_encoders={Decimal: str})

    account_id: str = Field(..., min_length=1, description="Account ID")
    side: OrderSide = Field(..., description="Order side")
    shares: int = Field(..., gt=0, description="Share count")
    unit_price: Decimal = Field(..., gt=0, description="Unit price at placement")
    notional: Decimal = Field(..., ge=0, description="Order value")
    cost_basis: Decimal = Field(default=Decimal("0"), ge=0, description="Cost basis")
    start_time: datetime = Field(..., description="Freeze start")
    end_time: datetime = Field(..., description="Freeze end")
    id: Optional[int] = Field(default=None, description="Store row id")

    @model_validator(mode="after")
    def end_not_before_start(self) -> "PendingOrder":
        if self.end_time < self.start_time:
            raise ValueError("end_time must not precede start_time")
        return self

    @property
    def freeze_minutes(self) -> float:
        return (self.end_time - self.start_time).total_seconds() / 60

    def is_matured(self, now: datetime) -> bool:
        return self.end_time <= now

    def seconds_left(self, now: datetime) -> int:
        remaining = (self.end_time - now).total_seconds()
        return max(0, math.ceil(remaining))


class Holding(BaseModel):
    """Shares owned by an account."""
    model_config = ConfigDict(json_encoders={Decimal: str})

    account_id: str = Field(..., min_length=1, description="Account ID")
    instrument_id: str = Field(default="MAIN", description="Instrument ID")
    shares: int = Field(..., ge=0, description="Share count")
    total_cost: Decimal = Field(default=Decimal("0"), description="Total cost basis")

    @field_validator("total_cost")
    @classmethod
    def cost_not_negative(cls, v: Decimal) -> Decimal:
        return max(Decimal("0"), v)

    @property
    def has_cost_basis(self) -> bool:
        """False for legacy holdings written before cost basis existed."""
        return self.total_cost > 0

    @property
    def average_cost(self) -> Optional[Decimal]:
        if not self.has_cost_basis or self.shares == 0:
            return None
        return to_money(self.total_cost / self.shares)


# =============================================================================
# Runtime Records & Results
# =============================================================================

@dataclass
class CommandResult:
    """Structured result of a command for the presentation layer.

    Attributes:
        success: Whether the command was carried out
        message: Human-readable summary
        reason: Rejection reason when success is False
        payload: Command-specific data
    """
    success: bool
    message: str = ""
    reason: Optional[RejectReason] = None
    payload: Any = None

    @classmethod
    def ok(cls, message: str = "", payload: Any = None) -> "CommandResult":
        return cls(success=True, message=message, payload=payload)

    @classmethod
    def reject(cls, reason: RejectReason, message: str) -> "CommandResult":
        return cls(success=False, message=message, reason=reason)


@dataclass
class OrderReceipt:
    """What the user gets back after placing an order."""
    order: PendingOrder
    freeze_minutes: float
    settled: bool = False
    realized_pnl: Optional[Decimal] = None
    realized_pnl_pct: Optional[Decimal] = None


@dataclass
class SettlementRecord:
    """Outcome of settling one matured order."""
    order: PendingOrder
    settled_at: datetime
    holding: Optional[Holding] = None
    realized_pnl: Optional[Decimal] = None
    realized_pnl_pct: Optional[Decimal] = None


@dataclass
class TickResult:
    """Outcome of one scheduler tick."""
    time: datetime
    market_open: bool
    price: Optional[Decimal] = None
    market_opened: bool = False
    settlements: List[SettlementRecord] = field(default_factory=list)
    pruned_points: int = 0
    skipped_reason: Optional[str] = None


@dataclass
class PendingView:
    """A pending order as shown to its owner."""
    side: OrderSide
    shares: int
    unit_price: Decimal
    notional: Decimal
    seconds_left: int


@dataclass
class HoldingView:
    """An account's position valued at the current price."""
    account_id: str
    instrument_name: str
    shares: int
    current_price: Decimal
    market_value: Decimal
    average_cost: Optional[Decimal] = None
    total_cost: Optional[Decimal] = None
    profit: Optional[Decimal] = None
    profit_pct: Optional[Decimal] = None
    pending: List[PendingView] = field(default_factory=list)


@dataclass
class HistorySummary:
    """Headline figures for a history window."""
    latest: Decimal
    first: Decimal
    high: Decimal
    low: Decimal
    change: Decimal
    change_pct: Decimal
    amplitude_pct: Decimal


@dataclass
class HistoryView:
    """Price points for a window, downsampled for display."""
    range: HistoryRange
    points: List[PricePoint]
    summary: HistorySummary


@dataclass
class SimulationReport:
    """Result of a virtual-time run of the price engine."""
    ticks: int
    step_seconds: float
    start_price: Decimal
    end_price: Decimal
    high: Decimal
    low: Decimal
    clamp_hits: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def drift(self) -> Decimal:
        return to_money(self.end_price - self.start_price)
