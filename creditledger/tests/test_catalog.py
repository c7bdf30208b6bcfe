"""
Catalog tests: static plans/add-ons and the feature column mapping.
"""

import pytest
from pydantic import ValidationError as PydanticValidationError

from creditledger.core.database import subscription_grants
from creditledger.features.catalog.service import (
    UNLIMITED_UNITS,
    get_addon,
    get_free_trial_plan,
    get_plan,
    list_addons,
    list_plans,
    plan_feature_totals,
)
from creditledger.models.feature import Feature, FEATURE_GRANT_COLUMNS, parse_feature


def test_feature_grant_columns_cover_every_feature():
    assert set(FEATURE_GRANT_COLUMNS) == set(Feature)
    for total_name, used_name in FEATURE_GRANT_COLUMNS.values():
        assert total_name in subscription_grants.c
        assert used_name in subscription_grants.c


def test_parse_feature_normalizes_and_rejects_unknown():
    assert parse_feature(" Score_Check ") == Feature.SCORE_CHECK
    assert parse_feature(Feature.GUIDED_BUILD) is Feature.GUIDED_BUILD
    with pytest.raises(ValueError):
        parse_feature("cover_letter")


def test_leader_plan_matches_catalog_values():
    plan = get_plan("leader_plan")
    assert plan is not None
    assert plan.price == 12800
    assert plan.duration_hours == 8760
    assert plan_feature_totals(plan) == {
        Feature.OPTIMIZATION: 100,
        Feature.SCORE_CHECK: 100,
        Feature.GUIDED_BUILD: 0,
        Feature.LINKEDIN_MESSAGES: 0,
    }


def test_list_plans_excludes_free_trial_by_default_and_sorts_by_price():
    plans = list_plans()
    assert [p.plan_id for p in plans] == [
        "kickstart_plan",
        "starter_plan",
        "accelerator_plan",
        "achiever_plan",
        "leader_plan",
    ]
    assert "lite_check" in {p.plan_id for p in list_plans(include_free_trial=True)}


def test_free_trial_plan_is_lite_check():
    plan = get_free_trial_plan()
    assert plan.plan_id == "lite_check"
    assert plan.is_free_trial
    assert plan.price == 0


def test_free_trial_plan_missing_from_catalog_raises(monkeypatch):
    from creditledger.core.config import settings

    monkeypatch.setattr(settings, "FREE_TRIAL_PLAN_ID", "no_such_plan")
    with pytest.raises(LookupError):
        get_free_trial_plan()


def test_every_feature_is_sold_as_an_addon():
    assert {a.feature for a in list_addons()} == set(Feature)


def test_single_purchase_addons():
    jd = get_addon("jd_optimization_single_purchase")
    score = get_addon("resume_score_check_single_purchase")
    assert (jd.feature, jd.quantity, jd.price) == (Feature.OPTIMIZATION, 1, 19)
    assert (score.feature, score.quantity, score.price) == (Feature.SCORE_CHECK, 1, 9)
    assert get_addon("score_check_pack_5").quantity == 5


def test_unknown_ids_return_none():
    assert get_plan("platinum_plan") is None
    assert get_plan(None) is None
    assert get_addon("mystery_pack") is None


def test_plan_definitions_are_immutable():
    plan = get_plan("starter_plan")
    with pytest.raises(PydanticValidationError):
        plan.price = 1


def test_unlimited_is_a_finite_number():
    assert isinstance(UNLIMITED_UNITS, int)
    assert UNLIMITED_UNITS > max(p.optimizations for p in list_plans())
