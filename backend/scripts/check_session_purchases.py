#!/usr/bin/env python3
"""
Session purchase inspection script.

WHAT:
    Shows what the confirmation page would list for a buyer: purchases by
    session id, or by the recent-window fallback when no session is given.

USAGE:
    python scripts/check_session_purchases.py --company biz_123 --member mber_123 --session abc
    python scripts/check_session_purchases.py --company biz_123 --member mber_123 --window 120

REFERENCES:
    - backend/xperience/services/purchase_attribution_service.py
"""

import argparse
import os
import sys
from uuid import UUID

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from xperience.database import get_sync_session  # noqa: E402
from xperience.services.purchase_attribution_service import PurchaseAttributionService  # noqa: E402


def main():
    parser = argparse.ArgumentParser(description="List purchases attributed to a buyer visit")
    parser.add_argument("--company", required=True, help="Whop company id (biz_...)")
    parser.add_argument("--member", required=True, help="Whop member id (mber_...)")
    parser.add_argument("--flow", type=UUID, default=None, help="Restrict to one flow")
    parser.add_argument("--session", default=None, help="Session id (exact match)")
    parser.add_argument("--window", type=int, default=None, help="Window in minutes when no session is given")
    args = parser.parse_args()

    with get_sync_session() as db:
        service = PurchaseAttributionService(db, window_minutes=args.window)
        summary = service.get_purchases(args.company, args.member, flow_id=args.flow, session_id=args.session)

        print(f"Matched by {summary.matched_by}: {len(summary.purchases)} purchase(s)")
        for item in summary.purchases:
            print(
                f"  {item.purchased_at:%Y-%m-%d %H:%M:%S}  {item.purchase_type:10} {item.name:30} "
                f"{item.amount:>8} {item.currency}  session={item.session_id or '-'}"
            )
        print(f"Total: {summary.total}")


if __name__ == "__main__":
    main()
