"""
Drain the grant reconciliation queue and sweep expired grants.

Runs forever by default, polling every RECONCILE_POLL_INTERVAL_SECONDS.
Use --once for a single pass (cron style).

    python -m creditledger.workers.reconcile_grants --once --limit 20
"""
from __future__ import annotations

import argparse
import logging
import os
import time
from typing import Dict, Optional

from creditledger.core.config import settings
from creditledger.core.logging import configure_logging
from creditledger.features.grants.reconcile_job import requeue_failed, run_integrity_check, run_pending
from creditledger.features.grants.service import expire_grants

logger = logging.getLogger("creditledger.workers.reconcile_grants")


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def run_once(*, limit: Optional[int] = None, integrity: bool = False, fix: bool = False, requeue: bool = False) -> Dict:
    requeued = requeue_failed() if requeue else 0
    report = {
        "queue": run_pending(limit=limit, owner="reconcile_worker"),
        "expired": expire_grants(),
        "requeued": requeued,
    }
    if integrity:
        check = run_integrity_check(fix=fix)
        report["integrity"] = {
            "issues_found": check["issues_found"],
            "corrections_applied": check["corrections_applied"],
        }
    logger.info("[reconcile] pass complete", extra=report["queue"])
    return report


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Replay queued grant writes and expire old grants.")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit.")
    parser.add_argument("--limit", type=int, default=settings.RECONCILE_BATCH_LIMIT, help="Max queue rows per pass.")
    parser.add_argument("--interval", type=int, default=settings.RECONCILE_POLL_INTERVAL_SECONDS, help="Seconds between passes.")
    parser.add_argument("--integrity", action="store_true", help="Also run the ledger integrity check.")
    parser.add_argument("--fix", action="store_true", help="Clamp out-of-range counters found by the integrity check.")
    parser.add_argument("--requeue-failed", action="store_true", help="Make failed reconciliations due again before the pass.")
    parser.set_defaults(fix=_parse_bool(os.getenv("LEDGER_INTEGRITY_FIX"), False))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)

    requeue = args.requeue_failed
    while True:
        report = run_once(limit=args.limit, integrity=args.integrity, fix=args.fix, requeue=requeue)
        requeue = False
        if args.once:
            print(report)
            return 0
        time.sleep(max(1, args.interval))


if __name__ == "__main__":
    raise SystemExit(main())
