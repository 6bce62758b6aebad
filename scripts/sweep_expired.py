#!/usr/bin/env python3
"""Delete expired refresh tokens, pending MFA sessions and emailed action tokens.

Intended for cron or a systemd timer:
    DATABASE_URL=postgresql://... python scripts/sweep_expired.py
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def sweep() -> dict:
    from authcore.logging import correlation_scope, get_logger
    from authcore.service.runtime import get_runtime

    logger = get_logger("authcore.sweep")
    runtime = get_runtime()
    with correlation_scope() as run_id:
        try:
            removed = await runtime.auth.sweep_expired()
        finally:
            runtime.close()
        logger.info("sweep_completed", run_id=run_id, **removed)
    return removed


def main():
    parser = argparse.ArgumentParser(description="Remove expired authentication records")
    parser.add_argument("--json", action="store_true", help="Print counts as JSON")
    args = parser.parse_args()

    removed = asyncio.run(sweep())
    if args.json:
        print(json.dumps(removed, sort_keys=True))
    else:
        for kind, count in sorted(removed.items()):
            print(f"{kind}: {count}")


if __name__ == "__main__":
    main()
