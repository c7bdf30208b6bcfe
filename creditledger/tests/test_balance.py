"""
Balance aggregation tests.
"""

from datetime import timedelta

from sqlalchemy import update

from creditledger.core.database import get_db_session, subscription_grants
from creditledger.core.timeutils import utc_now
from creditledger.features.balance.service import get_balance, get_feature_remaining
from creditledger.features.grants.service import issue_from_purchase
from creditledger.features.ledger.service import consume
from creditledger.models.catalog import AddOnSelection
from creditledger.models.feature import Feature


def _assert_consistent(balance):
    for feature, fb in balance.features.items():
        assert fb.remaining == fb.total - fb.used, feature
        assert fb.remaining >= 0, feature


def test_never_purchased_has_no_entitlement():
    balance = get_balance("user_new")
    assert balance.has_entitlement is False
    assert all(fb.total == 0 and fb.remaining == 0 for fb in balance.features.values())
    assert set(balance.features) == set(Feature)


def test_grant_and_addons_are_summed_per_feature():
    now = utc_now()
    issue_from_purchase(
        "user_b1",
        provider_transaction_id="pay_b1",
        plan_id="starter_plan",
        addon_selections=[AddOnSelection(addon_id="score_check_pack_5")],
        now=now,
    )
    issue_from_purchase(
        "user_b1",
        provider_transaction_id="pay_b2",
        addon_selections=[AddOnSelection(addon_id="jd_optimization_single_purchase", quantity=2)],
        now=now,
    )

    balance = get_balance("user_b1", now=now)
    assert balance.has_entitlement is True
    assert balance.features[Feature.SCORE_CHECK].total == 10 + 5
    assert balance.features[Feature.OPTIMIZATION].total == 10 + 2
    assert balance.features[Feature.GUIDED_BUILD].total == 0
    _assert_consistent(balance)


def test_exhausted_addon_still_counts_toward_total_and_used():
    now = utc_now()
    issue_from_purchase(
        "user_b2",
        provider_transaction_id="pay_b3",
        addon_selections=[AddOnSelection(addon_id="resume_score_check_single_purchase")],
        now=now,
    )
    assert consume("user_b2", Feature.SCORE_CHECK, now=now).ok

    fb = get_balance("user_b2", now=now).features[Feature.SCORE_CHECK]
    assert (fb.total, fb.used, fb.remaining) == (1, 1, 0)


def test_expired_grant_is_excluded_but_user_keeps_entitlement_flag():
    start = utc_now() - timedelta(hours=9000)
    issue_from_purchase("user_b3", provider_transaction_id="pay_b4", plan_id="kickstart_plan", now=start)

    balance = get_balance("user_b3")
    assert balance.features[Feature.OPTIMIZATION].total == 0
    assert balance.has_entitlement is True


def test_revoked_grant_is_excluded():
    now = utc_now()
    result = issue_from_purchase("user_b4", provider_transaction_id="pay_b5", plan_id="kickstart_plan", now=now)
    with get_db_session() as session:
        session.execute(
            update(subscription_grants)
            .where(subscription_grants.c.id == result.grant_id)
            .values(status="revoked")
        )
    assert get_feature_remaining("user_b4", "optimization", now=now) == 0


def test_balance_reflects_every_committed_consume():
    now = utc_now()
    issue_from_purchase("user_b5", provider_transaction_id="pay_b6", plan_id="kickstart_plan", now=now)
    for expected in (4, 3, 2):
        consume("user_b5", "score_check", now=now)
        assert get_feature_remaining("user_b5", Feature.SCORE_CHECK, now=now) == expected
    _assert_consistent(get_balance("user_b5", now=now))


def test_to_dict_shape():
    payload = get_balance("user_b6").to_dict()
    assert payload["user_id"] == "user_b6"
    assert payload["has_entitlement"] is False
    assert payload["features"]["score_check"] == {"total": 0, "used": 0, "remaining": 0}
