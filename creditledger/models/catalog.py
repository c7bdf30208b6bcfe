"""
creditledger/models/catalog.py

Purchasable products: plans (time-bounded bundles of per-feature units) and
add-ons (perpetual single-feature packs). Prices are integer minor currency
units.
"""

from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from creditledger.models.feature import Feature


class PlanDefinition(BaseModel):
    """A catalog plan. Immutable; grants copy its totals at issuance."""
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price: int = Field(ge=0)
    mrp: int = Field(ge=0)
    duration_hours: int = Field(gt=0)
    optimizations: int = Field(default=0, ge=0)
    score_checks: int = Field(default=0, ge=0)
    guided_builds: int = Field(default=0, ge=0)
    linkedin_messages: int = Field(default=0, ge=0)
    tag: Optional[str] = None
    is_free_trial: bool = False

    def units_for(self, feature: Feature) -> int:
        return {
            Feature.OPTIMIZATION: self.optimizations,
            Feature.SCORE_CHECK: self.score_checks,
            Feature.GUIDED_BUILD: self.guided_builds,
            Feature.LINKEDIN_MESSAGES: self.linkedin_messages,
        }[feature]


class AddOnDefinition(BaseModel):
    model_config = ConfigDict(frozen=True)

    addon_id: str
    name: str
    price: int = Field(ge=0)
    feature: Feature
    quantity: int = Field(gt=0)


class AddOnSelection(BaseModel):
    """One line of a purchase: an add-on id and how many of it were bought."""
    model_config = ConfigDict(frozen=True)

    addon_id: str
    quantity: int = 1
