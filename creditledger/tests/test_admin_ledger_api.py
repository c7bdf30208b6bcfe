"""
Admin ledger routes: auth, expiry, revocation, re-grants and reconciliation.
"""

from datetime import timedelta

from creditledger.core.config import settings
from creditledger.core.timeutils import utc_now
from creditledger.features.grants.reconcile_job import claim_due_retries, enqueue_grant_retry, process_retry
from creditledger.features.grants.service import issue_from_purchase


def _admin(key):
    return {"X-Admin-Key": key}


def test_admin_routes_disabled_without_key(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    resp = client.post("/admin/ledger/expire")
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "admin_disabled"


def test_admin_routes_reject_wrong_key(client, admin_key):
    resp = client.post("/admin/ledger/expire", headers=_admin("nope"))
    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"


def test_expire_route(client, admin_key):
    issue_from_purchase("user_m1", provider_transaction_id="pay_m1", plan_id="kickstart_plan", now=utc_now() - timedelta(hours=9000))
    resp = client.post("/admin/ledger/expire", headers=_admin(admin_key))
    assert resp.status_code == 200
    assert resp.json() == {"expired": 1}


def test_regrant_route_credits_user_and_audits_admin(client, admin_key):
    resp = client.post(
        "/admin/ledger/regrant",
        json={"user_id": "user_m2", "feature": "score_check", "quantity": 2, "reason": "scoring crashed"},
        headers=_admin(admin_key),
    )
    assert resp.status_code == 200
    assert resp.json()["quantity"] == 2

    balance = client.get("/api/credits/balance", headers={"X-User-Id": "user_m2"}).json()
    assert balance["features"]["score_check"]["remaining"] == 2

    audit = client.get("/admin/ledger/audit", params={"action": "ledger.regrant"}, headers=_admin(admin_key)).json()
    entry = audit["entries"][0]
    assert entry["actor"].startswith("admin_key:")
    assert admin_key not in entry["actor"]
    assert entry["target_user_id"] == "user_m2"


def test_regrant_route_validates(client, admin_key):
    resp = client.post(
        "/admin/ledger/regrant",
        json={"user_id": "user_m3", "feature": "score_check", "quantity": 0, "reason": "x"},
        headers=_admin(admin_key),
    )
    assert resp.status_code == 400


def test_revoke_route(client, admin_key):
    issued = issue_from_purchase("user_m4", provider_transaction_id="pay_m4", plan_id="kickstart_plan")
    resp = client.post(
        f"/admin/ledger/grants/{issued.grant_id}/revoke",
        json={"reason": "refunded"},
        headers=_admin(admin_key),
    )
    assert resp.status_code == 200
    assert resp.json() == {"grant_id": issued.grant_id, "status": "revoked"}

    resp = client.post("/admin/ledger/grants/4040/revoke", json={"reason": "refunded"}, headers=_admin(admin_key))
    assert resp.status_code == 404


def test_reconcile_route_reports_queue_and_integrity(client, admin_key):
    resp = client.post("/admin/ledger/reconcile", json={"fix": False}, headers=_admin(admin_key))
    assert resp.status_code == 200
    body = resp.json()
    assert body["queue"] == {"claimed": 0, "succeeded": 0, "failed": 0}
    assert body["integrity"]["issues_found"] == 0


def test_requeue_route_retries_failed_reconciliation(client, admin_key):
    now = utc_now()
    payload = {"user_id": "user_m9", "plan_id": "retired_plan", "addon_selections": [], "requested_at": now.isoformat()}
    enqueue_grant_retry("pay_m9", "user_m9", payload, error="boom", now=now)
    process_retry(claim_due_retries(now=now + timedelta(minutes=1))[0], max_attempts=1, now=now + timedelta(minutes=1))

    resp = client.post("/admin/ledger/reconcile/pay_m9/requeue", headers=_admin(admin_key))
    assert resp.status_code == 200
    assert resp.json() == {"provider_transaction_id": "pay_m9", "requeued": 1}

    resp = client.post("/admin/ledger/reconcile/pay_m9/requeue", headers=_admin(admin_key))
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"
