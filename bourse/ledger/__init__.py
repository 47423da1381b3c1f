"""Account services the market pays from and credits to."""

from bourse.ledger.base import CashLedger, DemandAccountService
from bourse.ledger.paper import InMemoryCashLedger, InMemoryDemandAccount

__all__ = [
    "CashLedger",
    "DemandAccountService",
    "InMemoryCashLedger",
    "InMemoryDemandAccount",
]
