from __future__ import annotations

import argparse
import json
import os
import sys


def _bootstrap_app():
    from rebooked import create_app

    app = create_app()
    app.app_context().push()
    return app


def main():
    parser = argparse.ArgumentParser(description="Report orders needing an operator and seller wallet drift.")
    parser.add_argument("--limit", type=int, default=200, help="Max orders listed per bucket.")
    parser.add_argument("--stale-minutes", type=int, default=30, help="Age before a delivered order counts as stuck.")
    parser.add_argument("--tolerance", type=float, default=0.01, help="Allowed wallet drift before it is reported.")
    args = parser.parse_args()

    _bootstrap_app()
    from rebooked.services.reconciliation_service import stuck_orders, wallet_drift

    report = {
        "stuck": stuck_orders(limit=max(1, args.limit), stale_minutes=max(0, args.stale_minutes)),
        "wallets": wallet_drift(tolerance=max(0.0, args.tolerance)),
    }
    print(json.dumps(report, indent=2, default=str))
    drift_count = int(report["wallets"].get("drift_count") or 0)
    return 0 if drift_count == 0 else 2


if __name__ == "__main__":
    os.environ.setdefault("FLASK_APP", "main.py")
    sys.exit(main())
