#!/usr/bin/env python3
"""Ask the payment provider about intents still pending and confirm the paid ones."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from config import LOG_LEVEL, RECONCILE_BATCH_LIMIT, RECONCILE_PENDING_AFTER_SECONDS
from observability import configure_json_logging
from payledger.tasks import run_reconciliation_sweep


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--max", type=int, default=RECONCILE_BATCH_LIMIT, help="maximum intents to check")
    parser.add_argument(
        "--older-than-seconds",
        type=int,
        default=RECONCILE_PENDING_AFTER_SECONDS,
        help="only check intents created at least this long ago",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    configure_json_logging(level=LOG_LEVEL)
    report = run_reconciliation_sweep(older_than_seconds=args.older_than_seconds, limit=args.max)
    print(json.dumps(report.to_dict(), ensure_ascii=False))
    return 1 if report.partial_failures or report.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
