"""
creditledger/features/coupons/service.py

Coupon evaluation.

evaluate() is pure: it reads only the static rule table and the catalog.
Whether a user already spent a code is a separate question answered by
coupon_used_by(), which reads recorded purchase transactions.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Tuple
import logging
from sqlalchemy import select

from creditledger.core.database import get_db_session, purchase_transactions
from creditledger.core.timeutils import normalize_now, ensure_utc
from creditledger.features.catalog.service import get_plan


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CouponRule:
    code: str
    plan_id: str
    percent_off: int
    message: str
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class CouponEvaluation:
    valid: bool
    coupon_code: str
    discount_amount: int = 0
    final_amount: int = 0
    message: str = ""

    @property
    def is_full_waiver(self) -> bool:
        return self.valid and self.final_amount == 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "valid": self.valid,
            "coupon_code": self.coupon_code,
            "discount_amount": self.discount_amount,
            "final_amount": self.final_amount,
            "message": self.message,
        }


COUPON_RULES: Tuple[CouponRule, ...] = (
    CouponRule("full100", "leader_plan", 100, "100% discount applied to Leader plan"),
    CouponRule("primoboost", "kickstart_plan", 50, "50% discount applied to Kickstart plan"),
    CouponRule("first100", "lite_check", 100, "First 100 users: Lite Check free"),
    CouponRule("first500", "lite_check", 98, "First 500 users: 98% off Lite Check"),
)

_RULES_BY_KEY: Dict[Tuple[str, str], CouponRule] = {
    (rule.code, rule.plan_id): rule for rule in COUPON_RULES
}


def normalize_code(coupon_code: Optional[str]) -> str:
    return (coupon_code or "").strip().lower()


def evaluate(plan_id: str, coupon_code: str, *, now: Optional[datetime] = None) -> CouponEvaluation:
    """
    Price a plan under a coupon.

    Unknown plans, unknown (code, plan) pairs and expired rules all come back
    as valid=False with a message; nothing is raised for bad input.
    """
    code = normalize_code(coupon_code)
    plan = get_plan(plan_id)

    if plan is None:
        return CouponEvaluation(valid=False, coupon_code=code, message=f"Unknown plan: {plan_id}")
    if not code:
        return CouponEvaluation(valid=False, coupon_code=code, final_amount=plan.price, message="Coupon code is required")

    rule = _RULES_BY_KEY.get((code, plan.plan_id))
    if rule is None:
        logger.info(
            "[coupons] no rule for code and plan",
            extra={"coupon_code": code, "plan_id": plan.plan_id},
        )
        return CouponEvaluation(
            valid=False,
            coupon_code=code,
            final_amount=plan.price,
            message="Invalid coupon code for this plan",
        )

    ts = normalize_now(now)
    if rule.expires_at is not None and ensure_utc(rule.expires_at) <= ts:
        return CouponEvaluation(
            valid=False,
            coupon_code=code,
            final_amount=plan.price,
            message="Coupon has expired",
        )

    discount = plan.price * rule.percent_off // 100
    return CouponEvaluation(
        valid=True,
        coupon_code=code,
        discount_amount=discount,
        final_amount=plan.price - discount,
        message=rule.message,
    )


def coupon_used_by(user_id: str, coupon_code: str) -> bool:
    """True if a successful transaction of this user carries the code.

    Rejected purchases keep the code they were attempted with but never
    consume it.
    """
    code = normalize_code(coupon_code)
    if not code:
        return False
    with get_db_session() as session:
        row = session.execute(
            select(purchase_transactions.c.id)
            .where(purchase_transactions.c.user_id == user_id)
            .where(purchase_transactions.c.coupon_code == code)
            .where(purchase_transactions.c.status == "success")
            .limit(1)
        ).first()
    return row is not None
