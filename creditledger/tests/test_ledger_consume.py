"""
Consume tests: source preference, exhaustion, compare-and-swap conflicts.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select, update

from creditledger.core.database import get_db_session, addon_credits, subscription_grants
from creditledger.core.errors import ValidationError
from creditledger.core.timeutils import ensure_utc, utc_now
from creditledger.features.balance.service import get_balance
from creditledger.features.catalog.service import UNLIMITED_UNITS
from creditledger.features.grants.service import _insert_grant, _insert_transaction, issue_from_purchase
from creditledger.features.ledger import service as ledger_service
from creditledger.features.ledger.service import (
    ConsumeStatus,
    CreditSource,
    consume,
    consume_with_retry,
)
from creditledger.models.catalog import AddOnSelection, PlanDefinition
from creditledger.models.feature import Feature
from creditledger.models.ledger import PurchaseType


def _buy_addon(user_id, txn, addon_id, now, quantity=1):
    return issue_from_purchase(
        user_id,
        provider_transaction_id=txn,
        addon_selections=[AddOnSelection(addon_id=addon_id, quantity=quantity)],
        now=now,
    )


def test_score_check_pack_end_to_end():
    now = utc_now()
    user = "user_e2e"

    first = consume(user, "score_check", now=now)
    assert first.status == ConsumeStatus.NO_CREDIT
    assert first.remaining == 0

    _buy_addon(user, "pay_e2e", "score_check_pack_5", now)
    fb = get_balance(user, now=now).features[Feature.SCORE_CHECK]
    assert (fb.total, fb.used) == (5, 0)

    for expected in (4, 3, 2, 1, 0):
        result = consume(user, "score_check", now=now)
        assert result.status == ConsumeStatus.OK
        assert result.source == CreditSource.ADDON
        assert result.remaining == expected

    assert consume(user, "score_check", now=now).status == ConsumeStatus.NO_CREDIT


def test_addon_is_spent_before_subscription():
    now = utc_now()
    issue_from_purchase(
        "user_l1",
        provider_transaction_id="pay_l1",
        plan_id="kickstart_plan",
        addon_selections=[AddOnSelection(addon_id="resume_score_check_single_purchase")],
        now=now,
    )

    first = consume("user_l1", Feature.SCORE_CHECK, now=now)
    second = consume("user_l1", Feature.SCORE_CHECK, now=now)
    assert first.source == CreditSource.ADDON
    assert second.source == CreditSource.SUBSCRIPTION
    assert second.remaining == 4


def test_oldest_addon_is_spent_first():
    now = utc_now()
    older = _buy_addon("user_l2", "pay_l2a", "jd_optimization_single_purchase", now - timedelta(days=3))
    newer = _buy_addon("user_l2", "pay_l2b", "jd_optimization_single_purchase", now)

    result = consume("user_l2", "optimization", now=now)
    assert result.source_id == older.addon_credit_ids[0]

    result = consume("user_l2", "optimization", now=now)
    assert result.source_id == newer.addon_credit_ids[0]


def test_oldest_grant_is_spent_first():
    now = utc_now()
    older = issue_from_purchase("user_l3", provider_transaction_id="pay_l3a", plan_id="kickstart_plan", now=now - timedelta(days=10))
    issue_from_purchase("user_l3", provider_transaction_id="pay_l3b", plan_id="starter_plan", now=now)

    result = consume("user_l3", "optimization", now=now)
    assert result.source == CreditSource.SUBSCRIPTION
    assert result.source_id == older.grant_id


def test_addons_of_other_features_are_not_touched():
    now = utc_now()
    _buy_addon("user_l4", "pay_l4", "guided_build_single_purchase", now)
    assert consume("user_l4", "score_check", now=now).status == ConsumeStatus.NO_CREDIT
    assert get_balance("user_l4", now=now).remaining(Feature.GUIDED_BUILD) == 1


def test_expired_grant_is_never_debited():
    start = utc_now() - timedelta(hours=9000)
    issue_from_purchase("user_l5", provider_transaction_id="pay_l5", plan_id="kickstart_plan", now=start)

    result = consume("user_l5", "optimization")
    assert result.status == ConsumeStatus.NO_CREDIT


def test_exhausted_grant_falls_through_to_next_grant():
    now = utc_now()
    first = issue_from_purchase("user_l6", provider_transaction_id="pay_l6a", plan_id="kickstart_plan", now=now - timedelta(hours=1))
    second = issue_from_purchase("user_l6", provider_transaction_id="pay_l6b", plan_id="kickstart_plan", now=now)

    sources = [consume("user_l6", "score_check", now=now).source_id for _ in range(6)]
    assert sources == [first.grant_id] * 5 + [second.grant_id]


def test_unlimited_grant_is_a_large_finite_counter():
    now = utc_now()
    plan = PlanDefinition(
        plan_id="internal_unlimited",
        name="Internal",
        price=0,
        mrp=0,
        duration_hours=24,
        optimizations=UNLIMITED_UNITS,
    )
    with get_db_session() as session:
        txn_id = _insert_transaction(
            session,
            provider_transaction_id="internal:user_l7",
            user_id="user_l7",
            purchase_type=PurchaseType.PLAN,
            plan_id=plan.plan_id,
            addon_selections=[],
            coupon_code=None,
            amount=0,
            discount_amount=0,
            currency="INR",
            now=now,
        )
        _insert_grant(session, user_id="user_l7", plan=plan, transaction_id=txn_id, now=now)

    result = consume("user_l7", "optimization", now=now)
    assert result.ok
    assert result.remaining == UNLIMITED_UNITS - 1


def test_unknown_feature_and_empty_user_are_rejected():
    with pytest.raises(ValidationError):
        consume("user_l8", "cover_letter")
    with pytest.raises(ValidationError):
        consume("", "score_check")
    with pytest.raises(ValidationError):
        consume("user_l8", "score_check", max_attempts=0)


def test_lost_race_is_retried_and_debits_once(monkeypatch):
    now = utc_now()
    bought = _buy_addon("user_l9", "pay_l9", "score_check_pack_5", now)
    credit_id = bought.addon_credit_ids[0]
    original = ledger_service._cas_addon
    calls = []

    def racing_cas(session, candidate, feature, now):
        calls.append(candidate)
        if len(calls) == 1:
            # Another consumer spends a unit between our read and our write
            session.execute(
                update(addon_credits)
                .where(addon_credits.c.id == candidate.id)
                .values(quantity_remaining=candidate.seen - 1)
            )
        return original(session, candidate, feature, now)

    monkeypatch.setattr(ledger_service, "_cas_addon", racing_cas)

    result = consume("user_l9", "score_check", now=now)
    assert result.status == ConsumeStatus.OK
    assert result.attempts == 2
    assert [c.seen for c in calls] == [5, 4]

    with get_db_session() as session:
        remaining = session.execute(
            select(addon_credits.c.quantity_remaining).where(addon_credits.c.id == credit_id)
        ).scalar_one()
    # one unit for the simulated rival, one for us
    assert remaining == 3
    assert result.remaining == 3


def test_every_attempt_lost_is_conflict_exhausted_not_no_credit(monkeypatch):
    now = utc_now()
    _buy_addon("user_l10", "pay_l10", "score_check_pack_5", now)
    monkeypatch.setattr(ledger_service, "_cas_addon", lambda session, candidate, feature, now: False)

    result = consume("user_l10", "score_check", now=now, max_attempts=2)
    assert result.status == ConsumeStatus.CONFLICT_EXHAUSTED
    assert result.attempts == 2
    assert get_balance("user_l10", now=now).remaining(Feature.SCORE_CHECK) == 5


def test_conflict_on_addons_still_allows_subscription_debit(monkeypatch):
    now = utc_now()
    issue_from_purchase(
        "user_l11",
        provider_transaction_id="pay_l11",
        plan_id="kickstart_plan",
        addon_selections=[AddOnSelection(addon_id="resume_score_check_single_purchase")],
        now=now,
    )
    monkeypatch.setattr(ledger_service, "_cas_addon", lambda session, candidate, feature, now: False)

    result = consume("user_l11", "score_check", now=now, max_attempts=1)
    assert result.status == ConsumeStatus.OK
    assert result.source == CreditSource.SUBSCRIPTION


def test_grant_cas_refuses_when_used_reached_total():
    now = utc_now()
    issued = issue_from_purchase("user_l12", provider_transaction_id="pay_l12", plan_id="kickstart_plan", now=now)
    with get_db_session() as session:
        session.execute(
            update(subscription_grants)
            .where(subscription_grants.c.id == issued.grant_id)
            .values(score_checks_used=5)
        )
        assert ledger_service._cas_grant(
            session, ledger_service._Candidate(issued.grant_id, 4), Feature.SCORE_CHECK, now
        ) is False


def test_grant_cas_refuses_grant_that_expired_after_the_read():
    now = utc_now()
    issued = issue_from_purchase("user_l15", provider_transaction_id="pay_l15", plan_id="kickstart_plan", now=now)
    with get_db_session() as session:
        end_time = session.execute(
            select(subscription_grants.c.end_time).where(subscription_grants.c.id == issued.grant_id)
        ).scalar_one()
        candidate = ledger_service._Candidate(issued.grant_id, 0)
        past_end = ensure_utc(end_time) + timedelta(seconds=1)
        assert ledger_service._cas_grant(session, candidate, Feature.SCORE_CHECK, past_end) is False
        assert ledger_service._cas_grant(session, candidate, Feature.SCORE_CHECK, now) is True


def test_consume_with_retry_backs_off_then_returns_last_conflict(monkeypatch):
    now = utc_now()
    _buy_addon("user_l13", "pay_l13", "score_check_pack_5", now)
    monkeypatch.setattr(ledger_service, "_cas_addon", lambda session, candidate, feature, now: False)
    delays = []

    result = consume_with_retry("user_l13", "score_check", now=now, max_attempts=3, base_delay=0.1, sleep=delays.append)
    assert result.status == ConsumeStatus.CONFLICT_EXHAUSTED
    assert delays == [pytest.approx(0.1), pytest.approx(0.2)]


def test_consume_with_retry_returns_no_credit_immediately():
    delays = []
    result = consume_with_retry("user_l14", "score_check", sleep=delays.append)
    assert result.status == ConsumeStatus.NO_CREDIT
    assert delays == []
