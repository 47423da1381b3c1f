"""In-memory ledgers for paper trading and tests."""
from collections import defaultdict
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import structlog

from bourse.core.models import to_money, utcnow
from bourse.ledger.base import CashLedger, DemandAccountService

logger = structlog.get_logger(__name__)


class InMemoryCashLedger(CashLedger):
    """
    Dict-backed cash ledger.

    Debits that would take a balance below zero are refused. With an
    `opening_balance`, an account is funded with it the first time it is seen.
    """

    def __init__(
        self,
        initial_balances: Optional[Dict[Tuple[str, str], Decimal]] = None,
        opening_balance: Optional[Decimal] = None
    ):
        self.opening_balance = to_money(opening_balance) if opening_balance else Decimal("0")
        self._balances: Dict[Tuple[str, str], Decimal] = {}
        for key, amount in (initial_balances or {}).items():
            self._balances[key] = to_money(amount)

    def _balance(self, key: Tuple[str, str]) -> Decimal:
        if key not in self._balances:
            self._balances[key] = self.opening_balance
            if self.opening_balance:
                logger.info(
                    "paper_ledger.account_opened",
                    account_id=key[0],
                    currency=key[1],
                    balance=str(self.opening_balance)
                )
        return self._balances[key]

    async def get_balance(self, account_id: str, currency: str) -> Decimal:
        return self._balance((account_id, currency))

    async def adjust_balance(self, account_id: str, currency: str, delta: Decimal) -> bool:
        key = (account_id, currency)
        balance = self._balance(key)
        new_balance = balance + to_money(delta)
        if new_balance < 0:
            logger.warning(
                "paper_ledger.overdraft_refused",
                account_id=account_id,
                balance=str(balance),
                delta=str(delta)
            )
            return False
        self._balances[key] = new_balance
        return True


class InMemoryDemandAccount(DemandAccountService):
    """Demand deposits kept as dated buckets, withdrawn oldest first."""

    def __init__(self):
        self._buckets: Dict[Tuple[str, str], List[List]] = defaultdict(list)

    def deposit(
        self,
        account_id: str,
        currency: str,
        amount: Decimal,
        when: Optional[datetime] = None
    ):
        bucket = [when or utcnow(), to_money(amount)]
        buckets = self._buckets[(account_id, currency)]
        buckets.append(bucket)
        buckets.sort(key=lambda b: b[0])

    async def get_demand_total(self, account_id: str, currency: str) -> Decimal:
        return sum((b[1] for b in self._buckets[(account_id, currency)]), Decimal("0"))

    async def deduct_demand_fifo(self, account_id: str, currency: str, amount: Decimal) -> bool:
        amount = to_money(amount)
        if amount <= 0:
            return True
        if await self.get_demand_total(account_id, currency) < amount:
            return False

        remaining = amount
        buckets = self._buckets[(account_id, currency)]
        while remaining > 0:
            bucket = buckets[0]
            taken = min(bucket[1], remaining)
            bucket[1] -= taken
            remaining -= taken
            if bucket[1] == 0:
                buckets.pop(0)

        logger.debug("paper_demand.deducted", account_id=account_id, amount=str(amount))
        return True
