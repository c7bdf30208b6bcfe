"""
Grant reconciliation.

A captured payment whose grant write failed is parked in
grant_reconciliation_queue, keyed by provider transaction id. The worker
claims due rows and replays the original purchase; issuance is idempotent on
the transaction id, so a replay after a partial success never double-grants.

Rows that exhaust RECONCILE_MAX_ATTEMPTS are marked failed but stay
claimable at the capped backoff, so a long storage outage delays the grant
without losing it. requeue_failed() makes them due immediately. A replay
that ends in a recorded rejection (coupon or free-trial checks) is terminal.

Also hosts the ledger integrity check, which records a job run and, with
fix=True, clamps counters that fell outside their invariants.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Dict, Any
from sqlalchemy import select, update, insert, or_
from sqlalchemy.exc import SQLAlchemyError

from creditledger.core.config import settings
from creditledger.core.database import (
    get_db_session,
    grant_reconciliation_queue,
    subscription_grants,
    addon_credits,
    ledger_job_runs,
)
from creditledger.core.errors import AppError
from creditledger.core.timeutils import normalize_now, utc_now
from creditledger.features.audit.service import record_ledger_audit, SYSTEM_ACTOR
from creditledger.models.feature import FEATURE_GRANT_COLUMNS


logger = logging.getLogger(__name__)

# Statuses the worker may claim; failed rows are retried at the backoff cap.
CLAIMABLE_STATUSES = ('pending', 'failed')
BACKOFF_CAP_SECONDS = 3600


def _compute_backoff(attempt_count: int) -> timedelta:
    """Exponential backoff with floor 30s and cap 1 hour."""
    base = max(30, 2 ** attempt_count)
    seconds = min(base, BACKOFF_CAP_SECONDS)
    return timedelta(seconds=seconds)


def enqueue_grant_retry(
    provider_transaction_id: str,
    user_id: str,
    payload: Dict[str, Any],
    error: str,
    now: Optional[datetime] = None,
) -> None:
    """Upsert a queue row for a purchase whose grant could not be written.

    If a row exists, updates last_error and reschedules based on backoff.
    """
    ts = normalize_now(now)
    with get_db_session() as session:
        existing = session.execute(
            select(
                grant_reconciliation_queue.c.id,
                grant_reconciliation_queue.c.attempt_count,
            ).where(grant_reconciliation_queue.c.provider_transaction_id == provider_transaction_id)
        ).fetchone()

        if existing:
            attempt = int(existing.attempt_count or 0)
            next_attempt = ts + _compute_backoff(attempt)
            session.execute(
                update(grant_reconciliation_queue)
                .where(grant_reconciliation_queue.c.id == existing.id)
                .values(
                    last_error=error,
                    next_attempt_at=next_attempt,
                    status='pending',
                    updated_at=ts,
                )
            )
        else:
            next_attempt = ts + _compute_backoff(0)
            session.execute(
                insert(grant_reconciliation_queue).values(
                    provider_transaction_id=provider_transaction_id,
                    user_id=user_id,
                    payload_json=payload,
                    last_error=error,
                    attempt_count=0,
                    next_attempt_at=next_attempt,
                    status='pending',
                    created_at=ts,
                    updated_at=ts,
                )
            )

        record_ledger_audit(
            session,
            actor=SYSTEM_ACTOR,
            action="grants.reconcile.enqueue",
            target_user_id=user_id,
            target_resource=provider_transaction_id,
            payload={"last_error": error, "next_attempt_at": next_attempt.isoformat()},
            now=ts,
        )

    logger.warning(
        "[reconcile] purchase queued",
        extra={"provider_transaction_id": provider_transaction_id, "user_id": user_id},
    )


def claim_due_retries(limit: Optional[int] = None, now: Optional[datetime] = None, owner: str = "scheduler") -> List[Dict[str, Any]]:
    """Claim due queue rows (pending or failed) by marking them processing.

    The status flip is conditional on the row still having the status it was
    read with, so two workers never claim the same row.
    """
    ts = normalize_now(now)
    batch = limit if limit is not None else settings.RECONCILE_BATCH_LIMIT
    claimed = []
    with get_db_session() as session:
        rows = session.execute(
            select(
                grant_reconciliation_queue.c.id,
                grant_reconciliation_queue.c.provider_transaction_id,
                grant_reconciliation_queue.c.user_id,
                grant_reconciliation_queue.c.payload_json,
                grant_reconciliation_queue.c.attempt_count,
                grant_reconciliation_queue.c.next_attempt_at,
                grant_reconciliation_queue.c.status,
            )
            .where(grant_reconciliation_queue.c.status.in_(CLAIMABLE_STATUSES))
            .where(grant_reconciliation_queue.c.next_attempt_at <= ts)
            .order_by(grant_reconciliation_queue.c.next_attempt_at.asc())
            .limit(batch)
        ).fetchall()

        for r in rows:
            result = session.execute(
                update(grant_reconciliation_queue)
                .where(grant_reconciliation_queue.c.id == r.id)
                .where(grant_reconciliation_queue.c.status == r.status)
                .values(status='processing', locked_at=ts, lock_owner=owner, updated_at=ts)
            )
            if result.rowcount != 1:
                continue
            claimed.append({
                'id': r.id,
                'provider_transaction_id': r.provider_transaction_id,
                'user_id': r.user_id,
                'payload': dict(r.payload_json or {}),
                'attempt_count': int(r.attempt_count or 0),
                'next_attempt_at': r.next_attempt_at,
            })
    return claimed


def process_retry(row: Dict[str, Any], max_attempts: Optional[int] = None, now: Optional[datetime] = None) -> bool:
    """Replay one claimed purchase.

    Returns True if the grant now exists, False otherwise. A row that keeps
    failing is rescheduled with backoff; from max_attempts on it is marked
    failed (visible to the integrity check) and retried at the backoff cap.
    A replay recorded as a rejected purchase closes the row as rejected.
    """
    from creditledger.features.grants.service import replay_queued_purchase, IssueStatus

    ts = normalize_now(now)
    limit = max_attempts if max_attempts is not None else settings.RECONCILE_MAX_ATTEMPTS
    txn_id = row['provider_transaction_id']
    attempt = int(row['attempt_count'] or 0)

    error = None
    rejected = False
    try:
        result = replay_queued_purchase(txn_id, row['payload'])
        succeeded = result.status in (IssueStatus.ISSUED, IssueStatus.ALREADY_ISSUED)
        rejected = result.status in (
            IssueStatus.INVALID_COUPON,
            IssueStatus.COUPON_ALREADY_USED,
            IssueStatus.ALREADY_GRANTED,
        )
        if not succeeded:
            error = f"replay returned {result.status.value}"
    except (SQLAlchemyError, AppError, ValueError) as exc:
        succeeded = False
        error = str(exc)

    new_attempt = attempt + 1
    if succeeded:
        values = dict(status='succeeded', last_error=None)
    elif rejected:
        values = dict(status='rejected', last_error=error)
    elif new_attempt >= limit:
        values = dict(status='failed', last_error=error, next_attempt_at=ts + _compute_backoff(new_attempt))
    else:
        values = dict(status='pending', last_error=error, next_attempt_at=ts + _compute_backoff(new_attempt))

    with get_db_session() as session:
        session.execute(
            update(grant_reconciliation_queue)
            .where(grant_reconciliation_queue.c.id == row['id'])
            .values(attempt_count=new_attempt, locked_at=None, lock_owner=None, updated_at=ts, **values)
        )
        record_ledger_audit(
            session,
            actor=SYSTEM_ACTOR,
            action="grants.reconcile.attempt",
            target_user_id=row.get('user_id'),
            target_resource=txn_id,
            payload={"attempt": new_attempt, "succeeded": succeeded, "status": values['status'], "error": error},
            now=ts,
        )

    log = logger.info if succeeded else logger.warning
    log(
        "[reconcile] attempt",
        extra={"provider_transaction_id": txn_id, "attempt": new_attempt, "succeeded": succeeded},
    )
    return succeeded


def run_pending(limit: Optional[int] = None, now: Optional[datetime] = None, owner: str = "scheduler") -> Dict[str, int]:
    """Claim and process one batch of due rows."""
    ts = normalize_now(now)
    rows = claim_due_retries(limit=limit, now=ts, owner=owner)
    succeeded = 0
    for row in rows:
        if process_retry(row, now=ts):
            succeeded += 1
    return {"claimed": len(rows), "succeeded": succeeded, "failed": len(rows) - succeeded}


def requeue_failed(
    provider_transaction_id: Optional[str] = None,
    now: Optional[datetime] = None,
    actor: str = SYSTEM_ACTOR,
) -> int:
    """Make failed rows due now with a fresh attempt budget.

    Targets one transaction id, or every failed row when none is given.
    Returns the number of rows requeued.
    """
    ts = normalize_now(now)
    with get_db_session() as session:
        stmt = (
            update(grant_reconciliation_queue)
            .where(grant_reconciliation_queue.c.status == 'failed')
            .values(status='pending', attempt_count=0, next_attempt_at=ts, updated_at=ts)
        )
        if provider_transaction_id is not None:
            stmt = stmt.where(grant_reconciliation_queue.c.provider_transaction_id == provider_transaction_id)
        requeued = session.execute(stmt).rowcount or 0
        if requeued:
            record_ledger_audit(
                session,
                actor=actor,
                action="grants.reconcile.requeue",
                target_resource=provider_transaction_id,
                payload={"requeued": requeued},
                now=ts,
            )
    if requeued:
        logger.info("[reconcile] failed rows requeued", extra={"requeued": requeued, "provider_transaction_id": provider_transaction_id})
    return requeued


def _grant_violations(row) -> Dict[str, Dict[str, int]]:
    bad = {}
    for feature, (total_name, used_name) in FEATURE_GRANT_COLUMNS.items():
        total = int(getattr(row, total_name) or 0)
        used = int(getattr(row, used_name) or 0)
        if used < 0 or used > total:
            bad[used_name] = {"value": used, "fixed": min(max(used, 0), total)}
    return bad


def run_integrity_check(now: Optional[datetime] = None, fix: bool = False, limit: int = 100) -> Dict[str, Any]:
    """Scan grants and add-ons for counters outside their invariants.

    Violations: used < 0, used > total, remaining < 0, remaining > purchased.
    With fix=True (at most `limit` rows), values are clamped into range and
    each correction is audited. Failed reconciliation rows are reported too.
    """
    ts = normalize_now(now)
    issues = []
    corrections = 0

    with get_db_session() as session:
        used_checks = []
        for total_name, used_name in FEATURE_GRANT_COLUMNS.values():
            total_col = subscription_grants.c[total_name]
            used_col = subscription_grants.c[used_name]
            used_checks.append(used_col < 0)
            used_checks.append(used_col > total_col)
        grant_rows = session.execute(
            select(subscription_grants).where(or_(*used_checks))
        ).fetchall()

        for g in grant_rows:
            bad = _grant_violations(g)
            issues.append({
                "type": "grant_counter_out_of_range",
                "grant_id": g.id,
                "user_id": g.user_id,
                "columns": bad,
            })
            if fix and corrections < limit:
                session.execute(
                    update(subscription_grants)
                    .where(subscription_grants.c.id == g.id)
                    .values({name: v["fixed"] for name, v in bad.items()})
                )
                corrections += 1
                record_ledger_audit(
                    session,
                    actor=SYSTEM_ACTOR,
                    action="ledger.integrity_fix",
                    target_user_id=g.user_id,
                    target_resource=f"grant:{g.id}",
                    payload=bad,
                    now=ts,
                )

        addon_rows = session.execute(
            select(addon_credits).where(
                or_(
                    addon_credits.c.quantity_remaining < 0,
                    addon_credits.c.quantity_remaining > addon_credits.c.quantity_purchased,
                )
            )
        ).fetchall()

        for a in addon_rows:
            fixed = min(max(int(a.quantity_remaining), 0), int(a.quantity_purchased))
            issues.append({
                "type": "addon_remaining_out_of_range",
                "addon_credit_id": a.id,
                "user_id": a.user_id,
                "value": int(a.quantity_remaining),
                "fixed": fixed,
            })
            if fix and corrections < limit:
                session.execute(
                    update(addon_credits)
                    .where(addon_credits.c.id == a.id)
                    .values(quantity_remaining=fixed)
                )
                corrections += 1
                record_ledger_audit(
                    session,
                    actor=SYSTEM_ACTOR,
                    action="ledger.integrity_fix",
                    target_user_id=a.user_id,
                    target_resource=f"addon_credit:{a.id}",
                    payload={"quantity_remaining": {"value": int(a.quantity_remaining), "fixed": fixed}},
                    now=ts,
                )

        failed_rows = session.execute(
            select(
                grant_reconciliation_queue.c.provider_transaction_id,
                grant_reconciliation_queue.c.user_id,
                grant_reconciliation_queue.c.last_error,
            ).where(grant_reconciliation_queue.c.status == 'failed')
        ).fetchall()
        for q in failed_rows:
            issues.append({
                "type": "reconciliation_failed",
                "provider_transaction_id": q.provider_transaction_id,
                "user_id": q.user_id,
                "last_error": q.last_error,
            })

        stats = {
            "issues_found": len(issues),
            "corrections_applied": corrections,
        }
        session.execute(
            insert(ledger_job_runs).values(
                job_name="ledger.integrity_check",
                started_at=ts,
                finished_at=utc_now(),
                status="success",
                stats_json=json.dumps(stats),
            )
        )

    if issues:
        logger.warning("[reconcile] integrity issues", extra={"issues_found": len(issues), "corrections": corrections})

    return {
        "issues_found": len(issues),
        "corrections_applied": corrections,
        "issues": issues,
        "timestamp": ts.isoformat(),
    }
