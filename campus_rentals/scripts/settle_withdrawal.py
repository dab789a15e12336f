#!/usr/bin/env python3
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[2]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from campus_rentals.db.session import build_engine, build_session_factory
from campus_rentals.services.errors import MarketplaceError
from campus_rentals.services.withdrawal_service import settle_withdrawal


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Mark one pending withdrawal as paid or rejected after the manual payout.",
    )
    parser.add_argument("--withdrawal-id", type=int, required=True, help="WithdrawalID in withdrawals")
    parser.add_argument("--status", choices=["paid", "rejected"], required=True, help="Final withdrawal status")
    parser.add_argument(
        "--operator",
        default=os.environ.get("USER") or "operator",
        help="Name recorded in the audit log; defaults to $USER.",
    )
    parser.add_argument(
        "--db-url",
        default=os.environ.get("CAMPUS_RENT_DB_URL", "").strip(),
        help="SQLAlchemy DB URL; defaults to CAMPUS_RENT_DB_URL env var.",
    )
    return parser


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()

    if args.withdrawal_id <= 0:
        parser.error("--withdrawal-id must be > 0")
    if not args.db_url:
        parser.error("Missing DB URL. Set CAMPUS_RENT_DB_URL or pass --db-url.")

    session_factory = build_session_factory(build_engine(args.db_url))
    with session_factory() as db:
        try:
            withdrawal = settle_withdrawal(db, args.withdrawal_id, args.status, operator=args.operator)
        except MarketplaceError as exc:
            print(f"FAILED withdrawal_id={args.withdrawal_id}: {exc.message}")
            return 1

    print(
        f"OK withdrawal_id={withdrawal.WithdrawalID} user_id={withdrawal.UserID} "
        f"amount={withdrawal.Amount} method={withdrawal.Method} status={withdrawal.Status}"
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
