#!/usr/bin/env python3
"""Exchange excess liters out of mass-depleted lots and print a JSON summary.

Threshold and batch size come from EXCESS_SWAP_MIN_LITERS and
EXCESS_SWAP_BATCH_SIZE.

Usage: python scripts/sweep_excess_fuel.py [fixed|mobile]
"""

import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from constants import EXCESS_SWAP_BATCH_SIZE, EXCESS_SWAP_MIN_LITERS
from db import connect_db
from db_migrations import apply_migrations
import excess_exchange_service
from tank_repository import tank_kind


def main(argv):
    kind = tank_kind(argv[0] if argv else "mobile")
    conn = connect_db()
    try:
        apply_migrations(conn)
        result = excess_exchange_service.sweep_excess_fuel(
            conn, EXCESS_SWAP_MIN_LITERS, EXCESS_SWAP_BATCH_SIZE, kind
        )
    finally:
        conn.close()

    print(json.dumps(result, indent=2))
    return 1 if result["failed"] else 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(main(sys.argv[1:]))
