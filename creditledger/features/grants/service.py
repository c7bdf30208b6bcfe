"""
creditledger/features/grants/service.py

Grant issuance: purchases, free trial, fully-discounted coupon redemption,
expiry and revocation.

Issuance is idempotent on the payment provider's transaction id, which is a
unique column on purchase_transactions. A replay of the same id returns the
records created the first time. The transaction row, the subscription grant
and every add-on credit are written in one database transaction.

A captured payment must always end up as credits: when that write fails, the
request is parked in grant_reconciliation_queue and the caller gets
QUEUED_FOR_RECONCILIATION instead of an error.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import time
from sqlalchemy import select, update, insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from creditledger.core.config import settings
from creditledger.core.database import (
    get_db_session,
    subscription_grants,
    addon_credits,
    purchase_transactions,
)
from creditledger.core.errors import ValidationError, NotFoundError, ConflictError
from creditledger.core.timeutils import normalize_now
from creditledger.features.audit.service import record_ledger_audit, SYSTEM_ACTOR
from creditledger.features.catalog.service import get_plan, get_addon, get_free_trial_plan
from creditledger.features.coupons.service import (
    CouponEvaluation,
    coupon_used_by,
    evaluate as evaluate_coupon,
    normalize_code,
)
from creditledger.features.grants.reconcile_job import enqueue_grant_retry
from creditledger.features.payments.provider import (
    CaptureStatus,
    PaymentCapture,
    PaymentNotCapturedError,
    PaymentProvider,
    PaymentProviderError,
)
from creditledger.models.catalog import AddOnDefinition, AddOnSelection, PlanDefinition
from creditledger.models.feature import FEATURE_GRANT_COLUMNS
from creditledger.models.ledger import GrantStatus, PurchaseTransaction, PurchaseType, SubscriptionGrant


logger = logging.getLogger(__name__)


class IssueStatus(str, Enum):
    ISSUED = "issued"
    ALREADY_ISSUED = "already_issued"
    GRANTED = "granted"
    ALREADY_GRANTED = "already_granted"
    INVALID_COUPON = "invalid_coupon"
    COUPON_ALREADY_USED = "coupon_already_used"
    PAYMENT_REQUIRED = "payment_required"
    QUEUED_FOR_RECONCILIATION = "queued_for_reconciliation"


@dataclass(frozen=True)
class IssueResult:
    status: IssueStatus
    user_id: str
    transaction_id: Optional[int] = None
    grant_id: Optional[int] = None
    addon_credit_ids: Tuple[int, ...] = ()
    coupon: Optional[CouponEvaluation] = None
    message: Optional[str] = None

    @property
    def has_credits(self) -> bool:
        return self.status in (
            IssueStatus.ISSUED,
            IssueStatus.ALREADY_ISSUED,
            IssueStatus.GRANTED,
            IssueStatus.ALREADY_GRANTED,
        )


@dataclass(frozen=True)
class _PricedPurchase:
    plan: Optional[PlanDefinition]
    addons: Tuple[Tuple[AddOnDefinition, int], ...]
    purchase_type: PurchaseType
    amount: int

    def selections_payload(self) -> List[Dict[str, Any]]:
        return [{"addon_id": addon.addon_id, "quantity": qty} for addon, qty in self.addons]


def _coerce_selection(raw) -> AddOnSelection:
    if isinstance(raw, AddOnSelection):
        return raw
    if isinstance(raw, dict):
        return AddOnSelection(addon_id=str(raw.get("addon_id") or ""), quantity=int(raw.get("quantity", 1)))
    if isinstance(raw, str):
        return AddOnSelection(addon_id=raw)
    raise ValidationError(f"Unsupported add-on selection: {raw!r}")


def _price_purchase(plan_id: Optional[str], addon_selections: Optional[Iterable]) -> _PricedPurchase:
    """Resolve ids against the catalog and total the price.

    Raises:
        ValidationError: unknown plan/add-on, non-positive quantity, or an
            empty purchase
    """
    plan = None
    if plan_id:
        plan = get_plan(plan_id)
        if plan is None:
            raise ValidationError(f"Unknown plan: {plan_id}", code="invalid_purchase")

    addons: List[Tuple[AddOnDefinition, int]] = []
    for raw in addon_selections or ():
        selection = _coerce_selection(raw)
        addon = get_addon(selection.addon_id)
        if addon is None:
            raise ValidationError(f"Unknown add-on: {selection.addon_id}", code="invalid_purchase")
        if selection.quantity <= 0:
            raise ValidationError(
                f"Quantity must be positive for add-on {selection.addon_id}",
                code="invalid_purchase",
            )
        addons.append((addon, selection.quantity))

    if plan is None and not addons:
        raise ValidationError("Purchase must include a plan or at least one add-on", code="invalid_purchase")

    if plan is not None and addons:
        purchase_type = PurchaseType.PLAN_WITH_ADDONS
    elif plan is not None:
        purchase_type = PurchaseType.PLAN
    else:
        purchase_type = PurchaseType.ADDON_ONLY

    amount = (plan.price if plan else 0) + sum(addon.price * qty for addon, qty in addons)
    return _PricedPurchase(plan=plan, addons=tuple(addons), purchase_type=purchase_type, amount=amount)


def _insert_transaction(
    session: Session,
    *,
    provider_transaction_id: str,
    user_id: str,
    purchase_type: PurchaseType,
    plan_id: Optional[str],
    addon_selections: List[Dict[str, Any]],
    coupon_code: Optional[str],
    amount: int,
    discount_amount: int,
    currency: str,
    now: datetime,
    rejection_reason: Optional[str] = None,
) -> int:
    return session.execute(
        insert(purchase_transactions).values(
            provider_transaction_id=provider_transaction_id,
            user_id=user_id,
            purchase_type=purchase_type.value,
            plan_id=plan_id,
            addon_selections=addon_selections,
            coupon_code=coupon_code,
            amount=amount,
            discount_amount=discount_amount,
            final_amount=amount - discount_amount,
            currency=currency,
            status="rejected" if rejection_reason else "success",
            rejection_reason=rejection_reason,
            created_at=now,
        )
    ).inserted_primary_key[0]


def _insert_grant(
    session: Session,
    *,
    user_id: str,
    plan: PlanDefinition,
    transaction_id: int,
    now: datetime,
    free_trial_user_id: Optional[str] = None,
) -> int:
    values = {
        "user_id": user_id,
        "plan_id": plan.plan_id,
        "status": GrantStatus.ACTIVE.value,
        "start_time": now,
        "end_time": now + timedelta(hours=plan.duration_hours),
        "purchase_transaction_id": transaction_id,
        "free_trial_user_id": free_trial_user_id,
        "created_at": now,
        "updated_at": now,
    }
    for feature, (total_name, used_name) in FEATURE_GRANT_COLUMNS.items():
        values[total_name] = plan.units_for(feature)
        values[used_name] = 0
    return session.execute(insert(subscription_grants).values(**values)).inserted_primary_key[0]


def _insert_addon_credit(
    session: Session,
    *,
    user_id: str,
    addon: AddOnDefinition,
    ordered: int,
    transaction_id: int,
    now: datetime,
) -> int:
    units = addon.quantity * ordered
    return session.execute(
        insert(addon_credits).values(
            user_id=user_id,
            feature=addon.feature.value,
            addon_id=addon.addon_id,
            quantity_purchased=units,
            quantity_remaining=units,
            purchased_at=now,
            purchase_transaction_id=transaction_id,
            created_at=now,
        )
    ).inserted_primary_key[0]


def get_transaction(provider_transaction_id: str) -> Optional[PurchaseTransaction]:
    with get_db_session() as session:
        row = session.execute(
            select(purchase_transactions)
            .where(purchase_transactions.c.provider_transaction_id == provider_transaction_id)
        ).first()
    return PurchaseTransaction.from_row(row) if row else None


def _find_issued(provider_transaction_id: str) -> Optional[Tuple[PurchaseTransaction, Optional[int], Tuple[int, ...]]]:
    """The transaction for this id with the grant and add-on ids it created."""
    txn = get_transaction(provider_transaction_id)
    if txn is None:
        return None
    with get_db_session() as session:
        grant_row = session.execute(
            select(subscription_grants.c.id)
            .where(subscription_grants.c.purchase_transaction_id == txn.id)
            .order_by(subscription_grants.c.id.asc())
        ).first()
        addon_rows = session.execute(
            select(addon_credits.c.id)
            .where(addon_credits.c.purchase_transaction_id == txn.id)
            .order_by(addon_credits.c.id.asc())
        ).fetchall()
    return txn, (grant_row.id if grant_row else None), tuple(r.id for r in addon_rows)


def _already_issued(user_id: str, found) -> IssueResult:
    txn, grant_id, addon_ids = found
    if txn.user_id != user_id:
        raise ConflictError(f"Transaction {txn.provider_transaction_id} belongs to another user")
    if txn.rejected:
        status = IssueStatus(txn.rejection_reason)
        if status == IssueStatus.ALREADY_GRANTED and txn.plan_id:
            grant_id = _find_free_trial_grant(user_id, txn.plan_id)
        return IssueResult(
            status=status,
            user_id=user_id,
            transaction_id=txn.id,
            grant_id=grant_id,
            message=_REJECTION_MESSAGES[status],
        )
    logger.info(
        "[grants] purchase replay",
        extra={"user_id": user_id, "provider_transaction_id": txn.provider_transaction_id},
    )
    return IssueResult(
        status=IssueStatus.ALREADY_ISSUED,
        user_id=user_id,
        transaction_id=txn.id,
        grant_id=grant_id,
        addon_credit_ids=addon_ids,
    )


_REJECTION_MESSAGES = {
    IssueStatus.INVALID_COUPON: "Coupon is not valid for this purchase",
    IssueStatus.COUPON_ALREADY_USED: "You have already used this coupon",
    IssueStatus.ALREADY_GRANTED: "The free trial has already been used",
}


@dataclass(frozen=True)
class _Rejection:
    """Why a purchase cannot be applied as requested."""
    status: IssueStatus
    message: str
    coupon: Optional[CouponEvaluation] = None
    grant_id: Optional[int] = None


def _check_purchase(
    user_id: str,
    priced: _PricedPurchase,
    code: Optional[str],
    now: datetime,
) -> Tuple[Optional[CouponEvaluation], Optional[_Rejection]]:
    """Free-trial and coupon checks. Returns (applied coupon, rejection)."""
    plan = priced.plan
    if plan is not None and plan.is_free_trial:
        existing_id = _find_free_trial_grant(user_id, plan.plan_id)
        if existing_id is not None:
            return None, _Rejection(
                IssueStatus.ALREADY_GRANTED,
                _REJECTION_MESSAGES[IssueStatus.ALREADY_GRANTED],
                grant_id=existing_id,
            )

    if not code:
        return None, None
    if plan is None:
        return None, _Rejection(IssueStatus.INVALID_COUPON, "Coupons apply to plans only")
    if coupon_used_by(user_id, code):
        return None, _Rejection(
            IssueStatus.COUPON_ALREADY_USED,
            _REJECTION_MESSAGES[IssueStatus.COUPON_ALREADY_USED],
        )
    coupon = evaluate_coupon(plan.plan_id, code, now=now)
    if not coupon.valid:
        return None, _Rejection(IssueStatus.INVALID_COUPON, coupon.message, coupon=coupon)
    return coupon, None


def _issue(
    user_id: str,
    *,
    provider_transaction_id: str,
    plan_id: Optional[str],
    addon_selections: Optional[Iterable],
    coupon_code: Optional[str],
    amount: Optional[int],
    currency: Optional[str],
    now: Optional[datetime],
    enqueue_on_failure: bool,
    record_rejections: bool,
) -> IssueResult:
    """Shared issuance path.

    With record_rejections (the payment was captured), a purchase that fails
    the coupon or free-trial checks is still written as a rejected
    transaction plus an audit row, so the payment can be refunded or
    re-granted. Replays of that transaction id return the same rejection.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    if not provider_transaction_id:
        raise ValidationError("provider_transaction_id is required")
    ts = normalize_now(now)
    priced = _price_purchase(plan_id, addon_selections)
    cur = currency or settings.CURRENCY

    found = _find_issued(provider_transaction_id)
    if found is not None:
        return _already_issued(user_id, found)

    code = normalize_code(coupon_code) or None
    coupon, rejection = _check_purchase(user_id, priced, code, ts)
    if rejection is not None and not record_rejections:
        return IssueResult(
            status=rejection.status,
            user_id=user_id,
            grant_id=rejection.grant_id,
            coupon=rejection.coupon,
            message=rejection.message,
        )

    discount = coupon.discount_amount if coupon else 0
    if rejection is None and amount is not None and int(amount) != priced.amount - discount:
        logger.warning(
            "[grants] captured amount differs from catalog price",
            extra={
                "user_id": user_id,
                "provider_transaction_id": provider_transaction_id,
                "captured": int(amount),
                "expected": priced.amount - discount,
            },
        )

    grant_id = None
    addon_ids: Tuple[int, ...] = ()
    try:
        with get_db_session() as session:
            txn_id = _insert_transaction(
                session,
                provider_transaction_id=provider_transaction_id,
                user_id=user_id,
                purchase_type=priced.purchase_type,
                plan_id=priced.plan.plan_id if priced.plan else None,
                addon_selections=priced.selections_payload(),
                coupon_code=code,
                amount=priced.amount,
                discount_amount=discount,
                currency=cur,
                now=ts,
                rejection_reason=rejection.status.value if rejection else None,
            )
            if rejection is not None:
                record_ledger_audit(
                    session,
                    actor=SYSTEM_ACTOR,
                    action="grants.purchase_rejected",
                    target_user_id=user_id,
                    target_resource=provider_transaction_id,
                    payload={
                        "reason": rejection.status.value,
                        "plan_id": priced.plan.plan_id if priced.plan else None,
                        "coupon_code": code,
                        "captured_amount": amount,
                    },
                    now=ts,
                )
            else:
                if priced.plan is not None:
                    grant_id = _insert_grant(
                        session,
                        user_id=user_id,
                        plan=priced.plan,
                        transaction_id=txn_id,
                        now=ts,
                        free_trial_user_id=user_id if priced.plan.is_free_trial else None,
                    )
                addon_ids = tuple(
                    _insert_addon_credit(session, user_id=user_id, addon=addon, ordered=qty, transaction_id=txn_id, now=ts)
                    for addon, qty in priced.addons
                )
    except SQLAlchemyError as exc:
        if isinstance(exc, IntegrityError):
            # Lost the insert race on provider_transaction_id
            found = _find_issued(provider_transaction_id)
            if found is not None:
                return _already_issued(user_id, found)
            if (
                rejection is None
                and priced.plan is not None
                and priced.plan.is_free_trial
                and _find_free_trial_grant(user_id, priced.plan.plan_id) is not None
            ):
                # Lost the race for the user's only free-trial grant; rerun the checks
                return _issue(
                    user_id,
                    provider_transaction_id=provider_transaction_id,
                    plan_id=plan_id,
                    addon_selections=addon_selections,
                    coupon_code=coupon_code,
                    amount=amount,
                    currency=currency,
                    now=now,
                    enqueue_on_failure=enqueue_on_failure,
                    record_rejections=record_rejections,
                )
        if not enqueue_on_failure:
            raise
        logger.error(
            "[grants] grant write failed, queueing for reconciliation",
            extra={"user_id": user_id, "provider_transaction_id": provider_transaction_id, "error_code": "grant_creation_failed"},
        )
        enqueue_grant_retry(
            provider_transaction_id,
            user_id,
            payload={
                "user_id": user_id,
                "plan_id": priced.plan.plan_id if priced.plan else None,
                "addon_selections": priced.selections_payload(),
                "coupon_code": code,
                "amount": amount,
                "currency": cur,
                "requested_at": ts.isoformat(),
            },
            error=str(exc),
            now=ts,
        )
        return IssueResult(
            status=IssueStatus.QUEUED_FOR_RECONCILIATION,
            user_id=user_id,
            coupon=coupon,
            message="Payment received; credits will be added shortly",
        )

    if rejection is not None:
        logger.warning(
            "[grants] captured payment rejected",
            extra={
                "user_id": user_id,
                "provider_transaction_id": provider_transaction_id,
                "error_code": rejection.status.value,
            },
        )
        return IssueResult(
            status=rejection.status,
            user_id=user_id,
            transaction_id=txn_id,
            grant_id=rejection.grant_id,
            coupon=rejection.coupon,
            message=rejection.message,
        )

    logger.info(
        "[grants] purchase issued",
        extra={
            "user_id": user_id,
            "provider_transaction_id": provider_transaction_id,
            "purchase_type": priced.purchase_type.value,
            "grant_id": grant_id,
            "addon_credit_ids": list(addon_ids),
        },
    )
    return IssueResult(
        status=IssueStatus.ISSUED,
        user_id=user_id,
        transaction_id=txn_id,
        grant_id=grant_id,
        addon_credit_ids=addon_ids,
        coupon=coupon,
    )


def issue_from_purchase(
    user_id: str,
    *,
    provider_transaction_id: str,
    plan_id: Optional[str] = None,
    addon_selections: Optional[Iterable] = None,
    coupon_code: Optional[str] = None,
    amount: Optional[int] = None,
    currency: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IssueResult:
    """
    Turn a verified, captured payment into credits.

    Args:
        user_id: Purchasing user
        provider_transaction_id: Gateway transaction id (idempotency key)
        plan_id: Catalog plan, optional when add-ons are present
        addon_selections: AddOnSelection items (or {"addon_id", "quantity"} dicts)
        coupon_code: Optional coupon, checked for prior use and evaluated
        amount: Captured amount in minor units, compared against the catalog
        currency: Defaults to settings.CURRENCY
        now: Issuance time, defaults to UTC now

    Returns:
        IssueResult (ISSUED, ALREADY_ISSUED, or QUEUED_FOR_RECONCILIATION).
        A purchase that fails the coupon or free-trial checks returns
        INVALID_COUPON, COUPON_ALREADY_USED or ALREADY_GRANTED and is
        recorded as a rejected transaction.

    Raises:
        ValidationError: unknown ids or non-positive quantities
        ConflictError: transaction id already recorded for another user
        SQLAlchemyError: both the grant write and the queue write failed
    """
    return _issue(
        user_id,
        provider_transaction_id=provider_transaction_id,
        plan_id=plan_id,
        addon_selections=addon_selections,
        coupon_code=coupon_code,
        amount=amount,
        currency=currency,
        now=now,
        enqueue_on_failure=True,
        record_rejections=True,
    )


def replay_queued_purchase(provider_transaction_id: str, payload: Dict[str, Any]) -> IssueResult:
    """Re-run a queued purchase; storage errors propagate to the worker."""
    requested_at = payload.get("requested_at")
    return _issue(
        payload["user_id"],
        provider_transaction_id=provider_transaction_id,
        plan_id=payload.get("plan_id"),
        addon_selections=payload.get("addon_selections") or [],
        coupon_code=payload.get("coupon_code"),
        amount=payload.get("amount"),
        currency=payload.get("currency"),
        now=datetime.fromisoformat(requested_at) if requested_at else None,
        enqueue_on_failure=False,
        record_rejections=True,
    )


def _find_free_trial_grant(user_id: str, plan_id: str) -> Optional[int]:
    with get_db_session() as session:
        row = session.execute(
            select(subscription_grants.c.id)
            .where(subscription_grants.c.user_id == user_id)
            .where(subscription_grants.c.plan_id == plan_id)
            .order_by(subscription_grants.c.id.asc())
            .limit(1)
        ).first()
    return row.id if row else None


def issue_free_trial(user_id: str, *, now: Optional[datetime] = None) -> IssueResult:
    """
    Activate the free-trial plan, at most once per user.

    A second activation (sequential or concurrent) is not an error: it
    returns ALREADY_GRANTED with the existing grant id.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    ts = normalize_now(now)
    plan = get_free_trial_plan()

    existing_id = _find_free_trial_grant(user_id, plan.plan_id)
    if existing_id is not None:
        return IssueResult(status=IssueStatus.ALREADY_GRANTED, user_id=user_id, grant_id=existing_id)

    try:
        with get_db_session() as session:
            txn_id = _insert_transaction(
                session,
                provider_transaction_id=f"free_trial:{user_id}",
                user_id=user_id,
                purchase_type=PurchaseType.FREE_TRIAL,
                plan_id=plan.plan_id,
                addon_selections=[],
                coupon_code=None,
                amount=0,
                discount_amount=0,
                currency=settings.CURRENCY,
                now=ts,
            )
            grant_id = _insert_grant(
                session,
                user_id=user_id,
                plan=plan,
                transaction_id=txn_id,
                now=ts,
                free_trial_user_id=user_id,
            )
    except IntegrityError:
        existing_id = _find_free_trial_grant(user_id, plan.plan_id)
        if existing_id is None:
            raise
        return IssueResult(status=IssueStatus.ALREADY_GRANTED, user_id=user_id, grant_id=existing_id)

    logger.info("[grants] free trial granted", extra={"user_id": user_id, "grant_id": grant_id})
    return IssueResult(status=IssueStatus.GRANTED, user_id=user_id, transaction_id=txn_id, grant_id=grant_id)


def redeem_full_coupon(
    user_id: str,
    plan_id: str,
    coupon_code: str,
    *,
    now: Optional[datetime] = None,
) -> IssueResult:
    """Issue a plan directly when a coupon brings its price to zero.

    Coupons that leave something to pay return PAYMENT_REQUIRED with the
    evaluation so the caller can start a checkout at the discounted price.
    Nothing was paid, so a refused redemption leaves no transaction behind.
    """
    if get_plan(plan_id) is None:
        raise ValidationError(f"Unknown plan: {plan_id}", code="invalid_purchase")
    code = normalize_code(coupon_code)
    evaluation = evaluate_coupon(plan_id, code, now=now)
    if not evaluation.valid:
        return IssueResult(
            status=IssueStatus.INVALID_COUPON,
            user_id=user_id,
            coupon=evaluation,
            message=evaluation.message,
        )
    if not evaluation.is_full_waiver:
        return IssueResult(
            status=IssueStatus.PAYMENT_REQUIRED,
            user_id=user_id,
            coupon=evaluation,
            message=evaluation.message,
        )
    return _issue(
        user_id,
        provider_transaction_id=f"coupon:{user_id}:{code}",
        plan_id=plan_id,
        addon_selections=None,
        coupon_code=code,
        amount=0,
        currency=None,
        now=now,
        enqueue_on_failure=True,
        record_rejections=False,
    )


def get_grant(grant_id: int) -> Optional[SubscriptionGrant]:
    with get_db_session() as session:
        row = session.execute(
            select(subscription_grants).where(subscription_grants.c.id == grant_id)
        ).first()
    return SubscriptionGrant.from_row(row) if row else None


def list_grants(user_id: str) -> List[SubscriptionGrant]:
    with get_db_session() as session:
        rows = session.execute(
            select(subscription_grants)
            .where(subscription_grants.c.user_id == user_id)
            .order_by(subscription_grants.c.start_time.asc(), subscription_grants.c.id.asc())
        ).fetchall()
    return [SubscriptionGrant.from_row(r) for r in rows]


def expire_grants(now: Optional[datetime] = None) -> int:
    """Mark active grants past end_time as expired. Returns rows changed."""
    ts = normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(subscription_grants)
            .where(subscription_grants.c.status == GrantStatus.ACTIVE.value)
            .where(subscription_grants.c.end_time <= ts)
            .values(status=GrantStatus.EXPIRED.value, updated_at=ts)
        )
        expired = result.rowcount or 0
        if expired:
            record_ledger_audit(
                session,
                actor=SYSTEM_ACTOR,
                action="grants.expire",
                payload={"expired": expired, "as_of": ts.isoformat()},
                now=ts,
            )
    if expired:
        logger.info("[grants] expired", extra={"count": expired})
    return expired


def revoke_grant(grant_id: int, *, reason: str, actor: str, now: Optional[datetime] = None) -> SubscriptionGrant:
    """Mark a grant revoked. Its counters are left untouched."""
    if not reason or not reason.strip():
        raise ValidationError("reason is required")
    ts = normalize_now(now)
    with get_db_session() as session:
        row = session.execute(
            select(subscription_grants.c.id, subscription_grants.c.user_id, subscription_grants.c.status)
            .where(subscription_grants.c.id == grant_id)
        ).first()
        if row is None:
            raise NotFoundError(f"Grant {grant_id} not found")
        if row.status != GrantStatus.REVOKED.value:
            session.execute(
                update(subscription_grants)
                .where(subscription_grants.c.id == grant_id)
                .values(status=GrantStatus.REVOKED.value, revoked_reason=reason.strip(), updated_at=ts)
            )
            record_ledger_audit(
                session,
                actor=actor,
                action="grants.revoke",
                target_user_id=row.user_id,
                target_resource=f"grant:{grant_id}",
                payload={"reason": reason.strip(), "previous_status": row.status},
                now=ts,
            )
    logger.info("[grants] revoked", extra={"grant_id": grant_id, "actor": actor})
    return get_grant(grant_id)


def await_payment_capture(
    provider: PaymentProvider,
    provider_transaction_id: str,
    *,
    max_attempts: Optional[int] = None,
    base_delay: Optional[float] = None,
    sleep=time.sleep,
) -> PaymentCapture:
    """
    Poll the provider until the payment is captured.

    Pending captures and provider errors are retried with exponential delay.

    Raises:
        PaymentNotCapturedError: the payment failed, or was still pending
            after the last attempt
        PaymentProviderError: every attempt errored
    """
    attempts = max_attempts if max_attempts is not None else settings.PAYMENT_CAPTURE_MAX_ATTEMPTS
    delay = base_delay if base_delay is not None else settings.PAYMENT_CAPTURE_BASE_DELAY
    last_error: Optional[PaymentProviderError] = None
    last_status: Optional[CaptureStatus] = None

    for attempt in range(1, attempts + 1):
        try:
            capture = provider.get_capture_status(provider_transaction_id)
        except PaymentProviderError as exc:
            last_error = exc
            logger.warning(
                "[grants] capture lookup failed",
                extra={"provider_transaction_id": provider_transaction_id, "attempt": attempt},
            )
        else:
            last_status = capture.status
            if capture.status == CaptureStatus.CAPTURED:
                return capture
            if capture.status == CaptureStatus.FAILED:
                raise PaymentNotCapturedError(provider_transaction_id, CaptureStatus.FAILED)
        if attempt < attempts:
            sleep(delay * (2 ** (attempt - 1)))

    if last_status is None and last_error is not None:
        raise PaymentProviderError(f"Capture lookup failed for {provider_transaction_id}") from last_error
    raise PaymentNotCapturedError(provider_transaction_id, last_status or CaptureStatus.PENDING)


def issue_after_capture(
    provider: PaymentProvider,
    user_id: str,
    *,
    provider_transaction_id: str,
    plan_id: Optional[str] = None,
    addon_selections: Optional[Iterable] = None,
    coupon_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> IssueResult:
    """Wait for capture, then issue with the captured amount and currency."""
    capture = await_payment_capture(provider, provider_transaction_id)
    return issue_from_purchase(
        user_id,
        provider_transaction_id=provider_transaction_id,
        plan_id=plan_id,
        addon_selections=addon_selections,
        coupon_code=coupon_code,
        amount=capture.amount,
        currency=capture.currency,
        now=now,
    )
