"""
Purchase and activation routes.

- POST /api/purchases: issue credits for a verified, captured payment
- POST /api/purchases/free-trial: activate the free trial (once per user)
- POST /api/purchases/coupon-redemptions: redeem a coupon that waives the full price

Payment verification (signature checks, order creation) happens before these
routes are called; they only record the outcome.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, field_validator
from sqlalchemy.exc import SQLAlchemyError

from creditledger.core.auth import get_current_user_id
from creditledger.core.errors import GrantCreationFailedError, ValidationError
from creditledger.core.logging import log_event
from creditledger.features.grants.service import (
    IssueResult,
    IssueStatus,
    issue_free_trial,
    issue_from_purchase,
    redeem_full_coupon,
)
from creditledger.models.catalog import AddOnSelection


router = APIRouter(prefix="/api/purchases", tags=["purchases"])


class AddOnSelectionIn(BaseModel):
    addon_id: str
    quantity: int = 1

    @field_validator("addon_id")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class PurchaseRequest(BaseModel):
    provider_transaction_id: str
    plan_id: Optional[str] = None
    addons: List[AddOnSelectionIn] = []
    coupon_code: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None

    @field_validator("provider_transaction_id", "plan_id", "coupon_code", "currency")
    @classmethod
    def _trim(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


class CouponRedemptionRequest(BaseModel):
    plan_id: str
    coupon_code: str

    @field_validator("plan_id", "coupon_code")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip()


class IssueResponse(BaseModel):
    status: str
    transaction_id: Optional[int] = None
    grant_id: Optional[int] = None
    addon_credit_ids: List[int] = []
    discount_amount: Optional[int] = None
    final_amount: Optional[int] = None
    message: Optional[str] = None


def _issue_payload(result: IssueResult) -> dict:
    return {
        "status": result.status.value,
        "transaction_id": result.transaction_id,
        "grant_id": result.grant_id,
        "addon_credit_ids": list(result.addon_credit_ids),
        "discount_amount": result.coupon.discount_amount if result.coupon else None,
        "final_amount": result.coupon.final_amount if result.coupon else None,
        "message": result.message,
    }


_STATUS_CODES = {
    IssueStatus.ISSUED: 201,
    IssueStatus.ALREADY_ISSUED: 200,
    IssueStatus.GRANTED: 200,
    IssueStatus.ALREADY_GRANTED: 200,
    IssueStatus.QUEUED_FOR_RECONCILIATION: 202,
    IssueStatus.PAYMENT_REQUIRED: 402,
    IssueStatus.INVALID_COUPON: 400,
    IssueStatus.COUPON_ALREADY_USED: 409,
}


def _respond(result: IssueResult) -> JSONResponse:
    return JSONResponse(status_code=_STATUS_CODES[result.status], content=_issue_payload(result))


@router.post("", response_model=IssueResponse)
def record_purchase(body: PurchaseRequest, user_id: str = Depends(get_current_user_id)):
    """
    Issue credits for a captured payment.

    Replays with the same provider_transaction_id return the original records
    (200). A purchase whose grant write failed is accepted for
    reconciliation (202).
    """
    if not body.provider_transaction_id:
        raise ValidationError("provider_transaction_id is required")
    try:
        result = issue_from_purchase(
            user_id,
            provider_transaction_id=body.provider_transaction_id,
            plan_id=body.plan_id,
            addon_selections=[AddOnSelection(addon_id=a.addon_id, quantity=a.quantity) for a in body.addons],
            coupon_code=body.coupon_code,
            amount=body.amount,
            currency=body.currency,
        )
    except SQLAlchemyError as exc:
        log_event(
            "error",
            "purchases.grant_write_failed",
            user_id=user_id,
            event_type="purchases.issue",
            error_code="grant_creation_failed",
            extra={"provider_transaction_id": body.provider_transaction_id, "error": exc},
        )
        raise GrantCreationFailedError("Payment received but credits could not be recorded") from exc
    return _respond(result)


@router.post("/free-trial", response_model=IssueResponse)
def activate_free_trial(user_id: str = Depends(get_current_user_id)):
    """Activate the free trial. Repeat calls report already_granted."""
    return _respond(issue_free_trial(user_id))


@router.post("/coupon-redemptions", response_model=IssueResponse)
def redeem_coupon(body: CouponRedemptionRequest, user_id: str = Depends(get_current_user_id)):
    return _respond(redeem_full_coupon(user_id, body.plan_id, body.coupon_code))
