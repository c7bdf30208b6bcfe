"""
creditledger/models/ledger.py

Read models for the ledger tables. Rows are converted at the service
boundary; nothing outside the ledger service mutates the underlying counters.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict

from creditledger.core.timeutils import ensure_utc
from creditledger.models.feature import Feature, FEATURE_GRANT_COLUMNS


class GrantStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class PurchaseType(str, Enum):
    PLAN = "plan"
    ADDON_ONLY = "addon_only"
    PLAN_WITH_ADDONS = "plan_with_addons"
    FREE_TRIAL = "free_trial"
    COMPENSATION = "compensation"


class SubscriptionGrant(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    plan_id: str
    status: GrantStatus
    start_time: datetime
    end_time: datetime
    totals: Dict[Feature, int]
    used: Dict[Feature, int]
    purchase_transaction_id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> "SubscriptionGrant":
        data = row._mapping
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            plan_id=data["plan_id"],
            status=GrantStatus(data["status"]),
            start_time=ensure_utc(data["start_time"]),
            end_time=ensure_utc(data["end_time"]),
            totals={f: int(data[cols[0]] or 0) for f, cols in FEATURE_GRANT_COLUMNS.items()},
            used={f: int(data[cols[1]] or 0) for f, cols in FEATURE_GRANT_COLUMNS.items()},
            purchase_transaction_id=data["purchase_transaction_id"],
        )

    def is_current(self, now: datetime) -> bool:
        return self.status == GrantStatus.ACTIVE and self.end_time > now


class AddOnCredit(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    feature: Feature
    addon_id: Optional[str] = None
    quantity_purchased: int
    quantity_remaining: int
    purchased_at: datetime

    @classmethod
    def from_row(cls, row) -> "AddOnCredit":
        data = row._mapping
        return cls(
            id=data["id"],
            user_id=data["user_id"],
            feature=Feature(data["feature"]),
            addon_id=data["addon_id"],
            quantity_purchased=int(data["quantity_purchased"]),
            quantity_remaining=int(data["quantity_remaining"]),
            purchased_at=ensure_utc(data["purchased_at"]),
        )


class PurchaseTransaction(BaseModel):
    """Append-only purchase record; written once, never updated."""
    model_config = ConfigDict(frozen=True)

    id: int
    provider_transaction_id: str
    user_id: str
    purchase_type: PurchaseType
    plan_id: Optional[str] = None
    addon_selections: List[Dict[str, Any]] = []
    coupon_code: Optional[str] = None
    amount: int = 0
    discount_amount: int = 0
    final_amount: int = 0
    currency: str
    status: str = "success"
    rejection_reason: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def rejected(self) -> bool:
        return self.status == "rejected"

    @classmethod
    def from_row(cls, row) -> "PurchaseTransaction":
        data = row._mapping
        return cls(
            id=data["id"],
            provider_transaction_id=data["provider_transaction_id"],
            user_id=data["user_id"],
            purchase_type=PurchaseType(data["purchase_type"]),
            plan_id=data["plan_id"],
            addon_selections=list(data["addon_selections"] or []),
            coupon_code=data["coupon_code"],
            amount=int(data["amount"] or 0),
            discount_amount=int(data["discount_amount"] or 0),
            final_amount=int(data["final_amount"] or 0),
            currency=data["currency"],
            status=data["status"],
            rejection_reason=data["rejection_reason"],
            created_at=ensure_utc(data["created_at"]),
        )
