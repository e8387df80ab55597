#!/usr/bin/env python3
"""Reconcile every active tank against its lots and print a JSON summary.

Usage: python scripts/reconcile_all.py [fixed|mobile ...]
"""

import json
import logging
import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from db import connect_db
from db_migrations import apply_migrations
import reconciliation_service
from tank_repository import tank_kind


def main(argv):
    kinds = [tank_kind(k) for k in (argv or ["fixed", "mobile"])]
    conn = connect_db()
    try:
        apply_migrations(conn)
        report = {}
        failed = 0
        for kind in kinds:
            results = reconciliation_service.reconcile_all_tanks(conn, kind)
            summary = reconciliation_service.reconciliation_summary(results)
            failed += summary["failed"]
            report[kind.name] = {"summary": summary, "results": [r.to_dict() for r in results]}
    finally:
        conn.close()

    print(json.dumps(report, indent=2))
    return 1 if failed else 0


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(main(sys.argv[1:]))
