#!/usr/bin/env python3
"""Generate a batch of redemption codes and print them one per line."""

from __future__ import annotations

import argparse
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parent.parent
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payledger.db import session_scope
from payledger.redemption import RedemptionService


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--count", type=int, required=True)
    parser.add_argument("--credits", type=int, required=True, help="credits granted per redemption")
    parser.add_argument("--max-uses", type=int, default=1)
    parser.add_argument("--expires-in-days", type=int, default=0, help="0 means never expires")
    parser.add_argument("--description", default=None)
    parser.add_argument("--created-by", default="cli")
    args = parser.parse_args(argv)

    expires_at = None
    if args.expires_in_days > 0:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_in_days)

    with session_scope() as session:
        batch_id, codes = RedemptionService(session).batch_create_codes(
            count=args.count,
            credit_amount=args.credits,
            created_by=args.created_by,
            max_uses=args.max_uses,
            expires_at=expires_at,
            description=args.description,
        )
        values = [code.code for code in codes]

    print(f"# batch {batch_id}", file=sys.stderr)
    for value in values:
        print(value)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
