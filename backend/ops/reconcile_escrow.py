from __future__ import annotations

import argparse
import json
import sys


def _bootstrap_app():
    from settlement import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Recompute escrow balances from the escrow ledger and report drift.")
    parser.add_argument("--since", default="", help="Optional since marker for report metadata.")
    parser.add_argument("--limit", type=int, default=5000, help="Maximum number of escrow accounts to check.")
    parser.add_argument("--persist", action="store_true", help="Record the outcome as a settlement event.")
    args = parser.parse_args()

    _bootstrap_app()
    from settlement.services.reconciliation_service import persist_report, reconcile_escrow_accounts

    summary = reconcile_escrow_accounts(since=(args.since or None), limit=args.limit)
    if args.persist:
        persist_report(summary)

    print(json.dumps(summary, indent=2))
    return 0 if int(summary.get("drift_count") or 0) == 0 else 2


if __name__ == "__main__":
    sys.exit(main())
