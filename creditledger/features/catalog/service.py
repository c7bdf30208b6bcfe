"""
creditledger/features/catalog/service.py

Static product catalog: plans and add-ons.

The catalog is data only. Grants copy plan totals at issuance time, so a
later catalog change never alters credits a user already holds.
"""

from typing import Dict, List, Optional

from creditledger.core.config import settings
from creditledger.models.catalog import AddOnDefinition, PlanDefinition
from creditledger.models.feature import Feature


# Stands in for "unlimited" so the remaining = total - used arithmetic holds.
UNLIMITED_UNITS = 1_000_000

ONE_YEAR_HOURS = 8760

_PLANS: Dict[str, PlanDefinition] = {
    plan.plan_id: plan
    for plan in (
        PlanDefinition(
            plan_id="leader_plan",
            name="Leader",
            price=12800,
            mrp=25600,
            duration_hours=ONE_YEAR_HOURS,
            optimizations=100,
            score_checks=100,
            tag="Best value",
        ),
        PlanDefinition(
            plan_id="achiever_plan",
            name="Achiever",
            price=6400,
            mrp=12800,
            duration_hours=ONE_YEAR_HOURS,
            optimizations=50,
            score_checks=50,
            tag="Most popular",
        ),
        PlanDefinition(
            plan_id="accelerator_plan",
            name="Accelerator",
            price=3200,
            mrp=6400,
            duration_hours=ONE_YEAR_HOURS,
            optimizations=25,
            score_checks=25,
        ),
        PlanDefinition(
            plan_id="starter_plan",
            name="Starter",
            price=1280,
            mrp=2560,
            duration_hours=ONE_YEAR_HOURS,
            optimizations=10,
            score_checks=10,
        ),
        PlanDefinition(
            plan_id="kickstart_plan",
            name="Kickstart",
            price=640,
            mrp=1280,
            duration_hours=ONE_YEAR_HOURS,
            optimizations=5,
            score_checks=5,
        ),
        PlanDefinition(
            plan_id="lite_check",
            name="Lite Check",
            price=0,
            mrp=0,
            duration_hours=720,
            optimizations=1,
            score_checks=1,
            tag="Free trial",
            is_free_trial=True,
        ),
    )
}

_ADDONS: Dict[str, AddOnDefinition] = {
    addon.addon_id: addon
    for addon in (
        AddOnDefinition(
            addon_id="jd_optimization_single_purchase",
            name="JD-Based Optimization",
            price=19,
            feature=Feature.OPTIMIZATION,
            quantity=1,
        ),
        AddOnDefinition(
            addon_id="resume_score_check_single_purchase",
            name="Resume Score Check",
            price=9,
            feature=Feature.SCORE_CHECK,
            quantity=1,
        ),
        AddOnDefinition(
            addon_id="optimization_pack_5",
            name="Optimization Pack (5)",
            price=89,
            feature=Feature.OPTIMIZATION,
            quantity=5,
        ),
        AddOnDefinition(
            addon_id="score_check_pack_5",
            name="Score Check Pack (5)",
            price=39,
            feature=Feature.SCORE_CHECK,
            quantity=5,
        ),
        AddOnDefinition(
            addon_id="guided_build_single_purchase",
            name="Guided Resume Build",
            price=49,
            feature=Feature.GUIDED_BUILD,
            quantity=1,
        ),
        AddOnDefinition(
            addon_id="linkedin_messages_pack_10",
            name="LinkedIn Messages (10)",
            price=29,
            feature=Feature.LINKEDIN_MESSAGES,
            quantity=10,
        ),
    )
}


def list_plans(include_free_trial: bool = False) -> List[PlanDefinition]:
    """Catalog plans, cheapest first."""
    plans = [p for p in _PLANS.values() if include_free_trial or not p.is_free_trial]
    return sorted(plans, key=lambda p: p.price)


def get_plan(plan_id: Optional[str]) -> Optional[PlanDefinition]:
    if not plan_id:
        return None
    return _PLANS.get(plan_id)


def list_addons() -> List[AddOnDefinition]:
    return list(_ADDONS.values())


def get_addon(addon_id: Optional[str]) -> Optional[AddOnDefinition]:
    if not addon_id:
        return None
    return _ADDONS.get(addon_id)


def get_free_trial_plan() -> PlanDefinition:
    """The plan granted by free-trial activation (FREE_TRIAL_PLAN_ID)."""
    plan = _PLANS.get(settings.FREE_TRIAL_PLAN_ID)
    if plan is None:
        raise LookupError(f"Free trial plan not in catalog: {settings.FREE_TRIAL_PLAN_ID}")
    return plan


def plan_feature_totals(plan: PlanDefinition) -> Dict[Feature, int]:
    return {feature: plan.units_for(feature) for feature in Feature}
