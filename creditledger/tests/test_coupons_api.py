from creditledger.features.grants.service import issue_from_purchase


def test_evaluate_anonymous(client):
    resp = client.post("/api/coupons/evaluate", json={"plan_id": "leader_plan", "coupon_code": " Full100 "})
    assert resp.status_code == 200
    body = resp.json()
    assert body["valid"] is True
    assert body["final_amount"] == 0
    assert body["already_used"] is None


def test_evaluate_wrong_plan(client):
    body = client.post("/api/coupons/evaluate", json={"plan_id": "starter_plan", "coupon_code": "full100"}).json()
    assert body["valid"] is False
    assert body["discount_amount"] == 0


def test_evaluate_reports_code_already_spent_by_caller(client):
    issue_from_purchase("user_q1", provider_transaction_id="pay_q1", plan_id="kickstart_plan", coupon_code="primoboost")

    spent = client.post(
        "/api/coupons/evaluate",
        json={"plan_id": "kickstart_plan", "coupon_code": "primoboost"},
        headers={"X-User-Id": "user_q1"},
    ).json()
    assert spent["valid"] is False
    assert spent["already_used"] is True

    fresh = client.post(
        "/api/coupons/evaluate",
        json={"plan_id": "kickstart_plan", "coupon_code": "primoboost"},
        headers={"X-User-Id": "user_q2"},
    ).json()
    assert fresh["valid"] is True
    assert fresh["already_used"] is False


def test_catalog_routes(client):
    plans = client.get("/api/catalog/plans").json()["plans"]
    assert plans[0]["plan_id"] == "kickstart_plan"
    assert "lite_check" not in {p["plan_id"] for p in plans}

    addons = client.get("/api/catalog/addons").json()["addons"]
    by_id = {a["addon_id"]: a for a in addons}
    assert by_id["score_check_pack_5"]["feature"] == "score_check"
    assert by_id["score_check_pack_5"]["quantity"] == 5
