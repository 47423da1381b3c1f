"""Holding arithmetic, including the policy for legacy holdings.

Holdings written before cost basis was tracked carry total_cost <= 0. Their
basis is estimated once, when the holding is next touched:
- at buy maturity, from the buy order's unit price
- at sell placement, from the current market price, so the legacy part of
  the sale realizes no profit
"""
from decimal import Decimal
from typing import Optional, Tuple

from bourse.core.models import Holding, PendingOrder, to_money


def estimated_basis(holding: Holding, reference_price: Decimal) -> Decimal:
    """Basis of a holding, estimating it from `reference_price` when missing."""
    if holding.has_cost_basis or holding.shares == 0:
        return holding.total_cost
    return to_money(holding.shares * reference_price)


def apply_buy(holding: Optional[Holding], order: PendingOrder) -> Holding:
    """Holding after a matured buy order."""
    if holding is None:
        return Holding(
            account_id=order.account_id,
            shares=order.shares,
            total_cost=order.notional
        )
    basis = estimated_basis(holding, order.unit_price)
    return Holding(
        account_id=holding.account_id,
        instrument_id=holding.instrument_id,
        shares=holding.shares + order.shares,
        total_cost=to_money(basis + order.notional)
    )


def apply_sell(holding: Holding, shares: int, current_price: Decimal) -> Tuple[Holding, Decimal]:
    """
    Debit `shares` from a holding.

    Returns:
        (remaining holding, cost basis of the shares sold)
    """
    if shares > holding.shares:
        raise ValueError(f"Cannot sell {shares} of {holding.shares} shares")

    basis = estimated_basis(holding, current_price)
    if shares == holding.shares:
        sold_basis = basis
    else:
        sold_basis = to_money(basis * shares / holding.shares)

    remaining = Holding(
        account_id=holding.account_id,
        instrument_id=holding.instrument_id,
        shares=holding.shares - shares,
        total_cost=to_money(basis - sold_basis)
    )
    return remaining, sold_basis


def realized_profit(notional: Decimal, cost_basis: Decimal) -> Tuple[Decimal, Optional[Decimal]]:
    """(profit, profit %) of a sale; the percentage is None without a basis."""
    profit = to_money(notional - cost_basis)
    if cost_basis <= 0:
        return profit, None
    return profit, to_money(profit / cost_basis * 100)


def repair_holding(holding: Holding, reference_price: Decimal) -> Optional[Holding]:
    """The holding with an estimated basis, or None if it needs no repair."""
    if holding.has_cost_basis or holding.shares == 0:
        return None
    return holding.model_copy(update={"total_cost": estimated_basis(holding, reference_price)})
