#!/usr/bin/env python3
"""
Run the periodic jobs without going through HTTP.

Usage:
    python scripts/run_cron.py                 # reminders, auto-responses, listing expiry, cleanup
    python scripts/run_cron.py --match 42      # re-run inventory matching for vehicle 42
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="AutoExplora periodic jobs")
    parser.add_argument("--match", type=int, metavar="VEHICLE_ID", help="run inventory matching for one vehicle")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    from app.autoexplora import create_app
    from app.autoexplora.db import session_scope
    from app.autoexplora.modules.cron import service

    app = create_app()
    with app.app_context(), session_scope(app) as s:
        if args.match:
            result = service.run_inventory_match(s, args.match)
        else:
            result = service.run_reminders(s)
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
