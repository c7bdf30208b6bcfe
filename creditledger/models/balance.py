"""
creditledger/models/balance.py

Reconciled per-feature balance, aggregated across all of a user's sources.
"""

from typing import Dict
from pydantic import BaseModel, ConfigDict

from creditledger.models.feature import Feature


class FeatureBalance(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int = 0
    used: int = 0

    @property
    def remaining(self) -> int:
        return self.total - self.used

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "used": self.used, "remaining": self.remaining}


class ReconciledBalance(BaseModel):
    """
    Aggregate view of a user's credits.

    has_entitlement is False only when the user has never held a grant or an
    add-on ("never purchased"). An exhausted user keeps has_entitlement=True
    with zero remaining.
    """
    model_config = ConfigDict(frozen=True)

    user_id: str
    has_entitlement: bool
    features: Dict[Feature, FeatureBalance]

    def remaining(self, feature: Feature) -> int:
        balance = self.features.get(feature)
        return balance.remaining if balance else 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "user_id": self.user_id,
            "has_entitlement": self.has_entitlement,
            "features": {f.value: b.to_dict() for f, b in self.features.items()},
        }
