"""Coupon evaluation route (POST /api/coupons/evaluate)."""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from creditledger.core.auth import optional_user_id
from creditledger.features.coupons.service import coupon_used_by, evaluate


router = APIRouter(prefix="/api/coupons", tags=["coupons"])


class EvaluateRequest(BaseModel):
    plan_id: str
    coupon_code: str

    @field_validator("plan_id", "coupon_code")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class EvaluateResponse(BaseModel):
    valid: bool
    coupon_code: str
    discount_amount: int
    final_amount: int
    message: str
    already_used: Optional[bool] = None


@router.post("/evaluate", response_model=EvaluateResponse)
def evaluate_coupon(body: EvaluateRequest, user_id: Optional[str] = Depends(optional_user_id)):
    """
    Price a plan under a coupon.

    Anonymous callers get the pure evaluation. When the caller is known,
    a code they already spent is reported as invalid with already_used=True.
    """
    evaluation = evaluate(body.plan_id, body.coupon_code)
    payload = evaluation.to_dict()
    if user_id and evaluation.valid:
        used = coupon_used_by(user_id, evaluation.coupon_code)
        payload["already_used"] = used
        if used:
            payload["valid"] = False
            payload["message"] = "You have already used this coupon"
    return payload
