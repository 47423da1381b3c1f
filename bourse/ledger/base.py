"""Interfaces of the external account services the market settles against."""
from abc import ABC, abstractmethod
from decimal import Decimal


class CashLedger(ABC):
    """Abstract balance store, one balance per account and currency."""

    @abstractmethod
    async def get_balance(self, account_id: str, currency: str) -> Decimal:
        """Current spendable balance."""
        pass

    @abstractmethod
    async def adjust_balance(self, account_id: str, currency: str, delta: Decimal) -> bool:
        """
        Add `delta` (negative to debit) to the balance.

        Returns:
            False when the adjustment was refused; implementations may also raise
        """
        pass


class DemandAccountService(ABC):
    """Abstract interest-bearing account used as a payment fallback."""

    @abstractmethod
    async def get_demand_total(self, account_id: str, currency: str) -> Decimal:
        """Total withdrawable amount across all buckets."""
        pass

    @abstractmethod
    async def deduct_demand_fifo(self, account_id: str, currency: str, amount: Decimal) -> bool:
        """Withdraw `amount`, draining the oldest buckets first."""
        pass
