#!/usr/bin/env python3
"""Runs the reconciliation pass once (cron). From the project root: python3 scripts/reconcile.py"""
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sqlmodel import Session  # noqa: E402

from crush.core.database import engine, init_db  # noqa: E402
from crush.logging import setup_logging  # noqa: E402
from crush.services.maintenance import run_reconciliation  # noqa: E402


def main():
    setup_logging(level=logging.INFO)
    init_db()
    with Session(engine) as db:
        report = run_reconciliation(db)
    print(json.dumps(report.as_dict(), indent=2))
    return 1 if report.usage_failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
