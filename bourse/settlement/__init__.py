"""Frozen-order placement and settlement."""

from bourse.settlement.payments import PaymentProcessor, PaymentResult
from bourse.settlement.queue import OrderSettlementQueue

__all__ = ["OrderSettlementQueue", "PaymentProcessor", "PaymentResult"]
