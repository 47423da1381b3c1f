#!/usr/bin/env python3
"""
Script to backfill the cost basis of holdings that predate cost tracking.

Holdings stored before cost basis existed have total_cost <= 0, which hides
their profit figures. This script estimates their basis as
shares x reference price, where the reference price defaults to the latest
recorded market price.

Usage:
    python scripts/repair_cost_basis.py            # dry run
    python scripts/repair_cost_basis.py --apply
    python scripts/repair_cost_basis.py --apply --price 1250
"""
import argparse
import asyncio
import sys
from decimal import Decimal
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bourse.core.config import market_config
from bourse.core.models import to_money
from bourse.settlement.cost_basis import repair_holding
from bourse.storage.database import Database


async def repair_cost_basis(apply: bool, price: Decimal = None) -> int:
    """Estimate missing cost basis. Returns the number of holdings repaired."""
    db = Database(instrument_id=market_config.instrument_id)
    await db.initialize()

    print("=" * 60)
    print("Cost Basis Repair Script")
    print("=" * 60)
    print()

    try:
        if price is None:
            latest = await db.get_latest_price_point()
            if latest is None:
                print("No price history found; pass --price explicitly.")
                return 0
            price = latest.price
        price = to_money(price)
        print(f"Reference price: {price}")
        print(f"Mode: {'APPLY' if apply else 'DRY RUN'}")
        print()

        repaired = 0
        for holding in await db.get_holdings():
            fixed = repair_holding(holding, price)
            if fixed is None:
                continue
            print(f"  {holding.account_id}: {holding.shares} shares -> total cost {fixed.total_cost}")
            if apply:
                await db.save_holding(fixed)
            repaired += 1

        print()
        print(f"{'Repaired' if apply else 'Would repair'} {repaired} holding(s)")
        return repaired
    finally:
        await db.close()


def main():
    parser = argparse.ArgumentParser(description="Backfill missing holding cost basis")
    parser.add_argument("--apply", action="store_true", help="Write the changes")
    parser.add_argument("--price", type=str, help="Reference price (default: latest price)")
    args = parser.parse_args()

    price = Decimal(args.price) if args.price else None
    asyncio.run(repair_cost_basis(args.apply, price))


if __name__ == "__main__":
    main()
