"""Payment collection for buy orders and proceeds for sells.

Buys are paid from cash first; any shortfall is drawn from the demand
account. If the demand leg fails the cash leg is refunded.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

import structlog

from bourse.core.models import RejectReason, to_money
from bourse.ledger.base import CashLedger, DemandAccountService

logger = structlog.get_logger(__name__)

ZERO = Decimal("0")


@dataclass
class PaymentResult:
    """Outcome of a charge attempt."""
    success: bool
    cash_paid: Decimal = ZERO
    demand_paid: Decimal = ZERO
    reason: Optional[RejectReason] = None
    message: str = ""

    @property
    def total_paid(self) -> Decimal:
        return self.cash_paid + self.demand_paid


class PaymentProcessor:
    """Moves money between the market and the account services."""

    def __init__(
        self,
        ledger: CashLedger,
        currency: str,
        demand_account: Optional[DemandAccountService] = None
    ):
        self.ledger = ledger
        self.currency = currency
        self.demand_account = demand_account

    async def available_funds(self, account_id: str) -> Tuple[Decimal, Decimal]:
        """(cash, demand) available to the account."""
        cash = await self.ledger.get_balance(account_id, self.currency)
        demand = ZERO
        if self.demand_account is not None:
            demand = await self.demand_account.get_demand_total(account_id, self.currency)
        return to_money(cash), to_money(demand)

    async def charge(self, account_id: str, amount: Decimal) -> PaymentResult:
        """Collect `amount`, cash first."""
        amount = to_money(amount)
        cash, demand = await self.available_funds(account_id)

        if cash + demand < amount:
            return PaymentResult(
                success=False,
                reason=RejectReason.INSUFFICIENT_FUNDS,
                message=f"Need {amount}, have {cash} cash and {demand} in demand account"
            )

        cash_part = min(max(cash, ZERO), amount)
        demand_part = amount - cash_part

        if cash_part > 0 and not await self._adjust(account_id, -cash_part):
            return PaymentResult(
                success=False,
                reason=RejectReason.PAYMENT_FAILED,
                message="Cash debit failed"
            )

        if demand_part > 0 and not await self._deduct_demand(account_id, demand_part):
            if cash_part > 0 and not await self._adjust(account_id, cash_part):
                logger.error(
                    "payments.refund_failed",
                    account_id=account_id,
                    amount=str(cash_part)
                )
            return PaymentResult(
                success=False,
                reason=RejectReason.PAYMENT_FAILED,
                message="Demand account deduction failed"
            )

        logger.info(
            "payments.charged",
            account_id=account_id,
            cash=str(cash_part),
            demand=str(demand_part)
        )
        return PaymentResult(success=True, cash_paid=cash_part, demand_paid=demand_part)

    async def refund(self, account_id: str, payment: PaymentResult) -> bool:
        """Return a collected payment as cash."""
        if payment.total_paid <= 0:
            return True
        ok = await self._adjust(account_id, payment.total_paid)
        if not ok:
            logger.error("payments.refund_failed", account_id=account_id, amount=str(payment.total_paid))
        return ok

    async def credit(self, account_id: str, amount: Decimal) -> bool:
        """Pay sale proceeds into the cash ledger."""
        return await self._adjust(account_id, to_money(amount))

    async def _adjust(self, account_id: str, delta: Decimal) -> bool:
        try:
            return bool(await self.ledger.adjust_balance(account_id, self.currency, delta))
        except Exception as e:
            logger.error("payments.ledger_error", account_id=account_id, delta=str(delta), error=str(e))
            return False

    async def _deduct_demand(self, account_id: str, amount: Decimal) -> bool:
        if self.demand_account is None:
            return False
        try:
            return bool(await self.demand_account.deduct_demand_fifo(account_id, self.currency, amount))
        except Exception as e:
            logger.error("payments.demand_error", account_id=account_id, amount=str(amount), error=str(e))
            return False
