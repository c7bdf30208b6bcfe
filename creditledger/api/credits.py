"""
Credit balance and consumption routes.

- GET  /api/credits/balance: reconciled per-feature balance
- POST /api/credits/consume: spend one unit of a feature
"""
from typing import Dict, Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, field_validator

from creditledger.core.auth import get_current_user_id
from creditledger.core.errors import ConflictExhaustedError, NoCreditError
from creditledger.core.logging import log_event
from creditledger.features.balance.service import get_balance
from creditledger.features.ledger.service import ConsumeStatus, consume_with_retry


router = APIRouter(prefix="/api/credits", tags=["credits"])


class FeatureBalanceOut(BaseModel):
    total: int
    used: int
    remaining: int


class BalanceResponse(BaseModel):
    user_id: str
    has_entitlement: bool
    features: Dict[str, FeatureBalanceOut]


class ConsumeRequest(BaseModel):
    feature: str

    @field_validator("feature")
    @classmethod
    def _trim(cls, value: str) -> str:
        return value.strip().lower()


class ConsumeResponse(BaseModel):
    feature: str
    remaining: int
    source: Optional[str] = None
    source_id: Optional[int] = None


@router.get("/balance", response_model=BalanceResponse)
def read_balance(user_id: str = Depends(get_current_user_id)):
    """Reconciled balance across every active grant and add-on."""
    return get_balance(user_id).to_dict()


@router.post("/consume", response_model=ConsumeResponse)
def consume_credit(body: ConsumeRequest, user_id: str = Depends(get_current_user_id)):
    """
    Spend one unit of a feature.

    Errors:
        400: Unknown feature
        402: No credit left for the feature
        409: Lost every concurrent-update race; safe to retry
    """
    result = consume_with_retry(user_id, body.feature)
    if not result.ok:
        log_event(
            "info",
            "credits.consume.denied",
            user_id=user_id,
            feature=result.feature.value,
            event_type="credits.consume",
            error_code=result.status.value,
            extra={"attempts": result.attempts},
        )
    if result.status == ConsumeStatus.NO_CREDIT:
        raise NoCreditError(f"No {result.feature.value} credits remaining")
    if result.status == ConsumeStatus.CONFLICT_EXHAUSTED:
        raise ConflictExhaustedError("Credit update conflicted, please retry")
    return {
        "feature": result.feature.value,
        "remaining": result.remaining,
        "source": result.source.value if result.source else None,
        "source_id": result.source_id,
    }
