"""
creditledger/features/ledger/service.py

Atomic single-unit consumption and compensating re-grants.

This module is the only writer of subscription_grants.*_used and
addon_credits.quantity_remaining. Every decrement is a conditional UPDATE
that names the value it read (compare-and-swap), so two consumers can never
both spend the same unit, on SQLite and PostgreSQL alike.

Source preference:
1. add-on credits with remaining > 0, oldest purchased_at first
2. active, unexpired subscription grants with used < total, oldest start first

A lost race re-reads the candidates and tries again, up to
LEDGER_MAX_CAS_ATTEMPTS per source. If every attempt lost and nothing was
debited, the caller gets CONFLICT_EXHAUSTED (retryable), never NO_CREDIT.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, NamedTuple, Optional
from uuid import uuid4
import logging
import time
from sqlalchemy import select, update, insert
from sqlalchemy.orm import Session

from creditledger.core.config import settings
from creditledger.core.database import (
    get_db_session,
    subscription_grants,
    addon_credits,
    purchase_transactions,
)
from creditledger.core.errors import ValidationError
from creditledger.core.timeutils import normalize_now
from creditledger.features.audit.service import record_ledger_audit
from creditledger.features.balance.service import get_balance
from creditledger.models.feature import Feature, FEATURE_GRANT_COLUMNS, parse_feature
from creditledger.models.ledger import GrantStatus, PurchaseType


logger = logging.getLogger(__name__)


class ConsumeStatus(str, Enum):
    OK = "ok"
    NO_CREDIT = "no_credit"
    CONFLICT_EXHAUSTED = "conflict_exhausted"


class CreditSource(str, Enum):
    ADDON = "addon"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class ConsumeResult:
    """Outcome of a consume call.

    remaining is the reconciled balance for the feature after the call.
    source/source_id identify the debited row when status is OK.
    """
    status: ConsumeStatus
    user_id: str
    feature: Feature
    remaining: int = 0
    source: Optional[CreditSource] = None
    source_id: Optional[int] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == ConsumeStatus.OK


@dataclass(frozen=True)
class RegrantResult:
    user_id: str
    feature: Feature
    quantity: int
    addon_credit_id: int
    transaction_id: int


class _Candidate(NamedTuple):
    id: int
    seen: int


@dataclass
class _PhaseOutcome:
    source_id: Optional[int] = None
    attempts: int = 0
    exhausted: bool = False


def _grant_columns(feature: Feature):
    total_name, used_name = FEATURE_GRANT_COLUMNS[feature]
    return subscription_grants.c[total_name], subscription_grants.c[used_name]


def _list_addon_candidates(session: Session, user_id: str, feature: Feature, now: datetime) -> List[_Candidate]:
    rows = session.execute(
        select(addon_credits.c.id, addon_credits.c.quantity_remaining)
        .where(addon_credits.c.user_id == user_id)
        .where(addon_credits.c.feature == feature.value)
        .where(addon_credits.c.quantity_remaining > 0)
        .order_by(addon_credits.c.purchased_at.asc(), addon_credits.c.id.asc())
    ).fetchall()
    return [_Candidate(r.id, int(r.quantity_remaining)) for r in rows]


def _cas_addon(session: Session, candidate: _Candidate, feature: Feature, now: datetime) -> bool:
    result = session.execute(
        update(addon_credits)
        .where(addon_credits.c.id == candidate.id)
        .where(addon_credits.c.quantity_remaining == candidate.seen)
        .where(addon_credits.c.quantity_remaining > 0)
        .values(quantity_remaining=candidate.seen - 1)
    )
    return result.rowcount == 1


def _list_grant_candidates(session: Session, user_id: str, feature: Feature, now: datetime) -> List[_Candidate]:
    total_col, used_col = _grant_columns(feature)
    rows = session.execute(
        select(subscription_grants.c.id, used_col.label("seen"))
        .where(subscription_grants.c.user_id == user_id)
        .where(subscription_grants.c.status == GrantStatus.ACTIVE.value)
        .where(subscription_grants.c.end_time > now)
        .where(used_col < total_col)
        .order_by(subscription_grants.c.start_time.asc(), subscription_grants.c.id.asc())
    ).fetchall()
    return [_Candidate(r.id, int(r.seen)) for r in rows]


def _cas_grant(session: Session, candidate: _Candidate, feature: Feature, now: datetime) -> bool:
    total_col, used_col = _grant_columns(feature)
    result = session.execute(
        update(subscription_grants)
        .where(subscription_grants.c.id == candidate.id)
        .where(subscription_grants.c.status == GrantStatus.ACTIVE.value)
        .where(subscription_grants.c.end_time > now)
        .where(used_col == candidate.seen)
        .where(used_col < total_col)
        .values({used_col.name: candidate.seen + 1})
    )
    return result.rowcount == 1


def _debit_first_available(
    user_id: str,
    feature: Feature,
    now: datetime,
    max_attempts: int,
    list_candidates: Callable[..., List[_Candidate]],
    compare_and_swap: Callable[..., bool],
    source: CreditSource,
) -> _PhaseOutcome:
    outcome = _PhaseOutcome()
    for attempt in range(1, max_attempts + 1):
        with get_db_session() as session:
            candidates = list_candidates(session, user_id, feature, now)
            if not candidates:
                return outcome
            candidate = candidates[0]
            outcome.attempts = attempt
            if compare_and_swap(session, candidate, feature, now):
                outcome.source_id = candidate.id
                return outcome
        logger.info(
            "[ledger] cas conflict",
            extra={
                "user_id": user_id,
                "feature": feature.value,
                "source": source.value,
                "source_id": candidate.id,
                "attempt": attempt,
            },
        )
    outcome.exhausted = True
    return outcome


def _coerce_feature(feature) -> Feature:
    try:
        return parse_feature(feature)
    except ValueError as e:
        raise ValidationError(str(e)) from None


def consume(
    user_id: str,
    feature,
    *,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
) -> ConsumeResult:
    """
    Spend exactly one unit of a feature for a user.

    Returns:
        ConsumeResult with status OK (remaining recomputed after the debit),
        NO_CREDIT when no source holds a unit, or CONFLICT_EXHAUSTED when every
        compare-and-swap lost a race.

    Raises:
        ValidationError: empty user id or unknown feature
        SQLAlchemyError: storage failure (propagated, nothing was debited)
    """
    if not user_id:
        raise ValidationError("user_id is required")
    feat = _coerce_feature(feature)
    ts = normalize_now(now)
    attempts = max_attempts if max_attempts is not None else settings.LEDGER_MAX_CAS_ATTEMPTS
    if attempts < 1:
        raise ValidationError("max_attempts must be at least 1")

    phases = (
        (CreditSource.ADDON, _list_addon_candidates, _cas_addon),
        (CreditSource.SUBSCRIPTION, _list_grant_candidates, _cas_grant),
    )

    total_attempts = 0
    conflicted = False
    for source, list_candidates, compare_and_swap in phases:
        outcome = _debit_first_available(user_id, feat, ts, attempts, list_candidates, compare_and_swap, source)
        total_attempts += outcome.attempts
        if outcome.source_id is not None:
            remaining = get_balance(user_id, now=ts).remaining(feat)
            logger.info(
                "[ledger] consume ok",
                extra={
                    "user_id": user_id,
                    "feature": feat.value,
                    "source": source.value,
                    "source_id": outcome.source_id,
                    "remaining": remaining,
                },
            )
            return ConsumeResult(
                status=ConsumeStatus.OK,
                user_id=user_id,
                feature=feat,
                remaining=remaining,
                source=source,
                source_id=outcome.source_id,
                attempts=total_attempts,
            )
        conflicted = conflicted or outcome.exhausted

    remaining = get_balance(user_id, now=ts).remaining(feat)
    if conflicted:
        logger.warning(
            "[ledger] consume conflict exhausted",
            extra={"user_id": user_id, "feature": feat.value, "attempts": total_attempts},
        )
        return ConsumeResult(
            status=ConsumeStatus.CONFLICT_EXHAUSTED,
            user_id=user_id,
            feature=feat,
            remaining=remaining,
            attempts=total_attempts,
        )

    logger.info(
        "[ledger] no credit",
        extra={"user_id": user_id, "feature": feat.value},
    )
    return ConsumeResult(
        status=ConsumeStatus.NO_CREDIT,
        user_id=user_id,
        feature=feat,
        remaining=remaining,
        attempts=total_attempts,
    )


def consume_with_retry(
    user_id: str,
    feature,
    *,
    now: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ConsumeResult:
    """Call consume(), retrying CONFLICT_EXHAUSTED with exponential delay.

    Any other outcome is returned immediately. After the last attempt the
    final CONFLICT_EXHAUSTED result is returned as is.
    """
    attempts = max_attempts if max_attempts is not None else settings.LEDGER_CONSUME_RETRY_ATTEMPTS
    delay = base_delay if base_delay is not None else settings.LEDGER_CONSUME_RETRY_BASE_DELAY
    if attempts < 1:
        raise ValidationError("max_attempts must be at least 1")

    result = None
    for attempt in range(attempts):
        result = consume(user_id, feature, now=now)
        if result.status != ConsumeStatus.CONFLICT_EXHAUSTED:
            return result
        if attempt < attempts - 1:
            sleep(delay * (2 ** attempt))
    return result


def regrant(
    user_id: str,
    feature,
    quantity: int,
    *,
    reason: str,
    actor: str,
    now: Optional[datetime] = None,
) -> RegrantResult:
    """
    Issue compensating credits after a consumed unit's downstream work failed.

    A unit, once consumed, stays consumed. Compensation is a fresh add-on
    credit recorded by a zero-amount transaction and an audit row.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    feat = _coerce_feature(feature)
    if quantity is None or int(quantity) <= 0:
        raise ValidationError("quantity must be positive")
    if not reason or not reason.strip():
        raise ValidationError("reason is required")
    ts = normalize_now(now)
    qty = int(quantity)

    with get_db_session() as session:
        txn_id = session.execute(
            insert(purchase_transactions).values(
                provider_transaction_id=f"compensation:{uuid4()}",
                user_id=user_id,
                purchase_type=PurchaseType.COMPENSATION.value,
                addon_selections=[{"feature": feat.value, "quantity": qty}],
                amount=0,
                discount_amount=0,
                final_amount=0,
                currency=settings.CURRENCY,
                status="success",
                created_at=ts,
            )
        ).inserted_primary_key[0]
        credit_id = session.execute(
            insert(addon_credits).values(
                user_id=user_id,
                feature=feat.value,
                addon_id=None,
                quantity_purchased=qty,
                quantity_remaining=qty,
                purchased_at=ts,
                purchase_transaction_id=txn_id,
                created_at=ts,
            )
        ).inserted_primary_key[0]
        record_ledger_audit(
            session,
            actor=actor,
            action="ledger.regrant",
            target_user_id=user_id,
            target_resource=f"addon_credit:{credit_id}",
            payload={"feature": feat.value, "quantity": qty, "reason": reason.strip(), "transaction_id": txn_id},
            now=ts,
        )

    logger.info(
        "[ledger] regrant",
        extra={"user_id": user_id, "feature": feat.value, "quantity": qty, "actor": actor},
    )
    return RegrantResult(
        user_id=user_id,
        feature=feat,
        quantity=qty,
        addon_credit_id=credit_id,
        transaction_id=txn_id,
    )
