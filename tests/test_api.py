import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from loyalty_engine.models import PointRule, Rank, Voucher, VoucherType
from loyalty_engine.utils.datetime import utcnow


@pytest.fixture
def catalog(session_factory):
    db = session_factory()
    try:
        bronze = Rank(name="bronze", display_name="Bronze", min_points=0, max_points=1000, level=1)
        silver = Rank(
            name="silver",
            display_name="Silver",
            min_points=1000,
            max_points=None,
            point_multiplier=Decimal("1.50"),
            level=2,
        )
        rule = PointRule(
            name="Purchase points",
            event_type="purchase",
            points_per_currency=Decimal("0.0001"),
            max_points_per_day=50,
            apply_rank_multiplier=False,
        )
        voucher = Voucher(
            code="SAVE50K",
            name="50k off",
            voucher_type=VoucherType.FIXED,
            discount_value=Decimal("50000"),
            min_order_value=Decimal("200000"),
            required_points=300,
            max_total_usage=1,
            valid_from=utcnow() - timedelta(days=1),
            valid_until=utcnow() + timedelta(days=30),
        )
        db.add_all([bronze, silver, rule, voucher])
        db.commit()
        return {"bronze": bronze.rank_id, "silver": silver.rank_id, "voucher": voucher.voucher_id}
    finally:
        db.close()


def _open(client, points=0):
    account_id = str(uuid.uuid4())
    response = client.put(f"/api/v1/accounts/{account_id}")
    assert response.status_code == 200
    if points:
        response = client.post(
            f"/api/v1/accounts/{account_id}/ledger",
            json={
                "kind": "admin_adjust",
                "points_delta": points,
                "reason": "Opening balance",
                "actor": "admin@example.com",
            },
        )
        assert response.status_code == 201
    return account_id


def test_health(client):
    response = client.get("/api/v1/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_open_account_and_read_balance(client, catalog):
    account_id = _open(client)

    again = client.put(f"/api/v1/accounts/{account_id}")
    balance = client.get(f"/api/v1/accounts/{account_id}/balance")
    rank = client.get(f"/api/v1/accounts/{account_id}/rank")

    assert again.status_code == 200
    assert balance.json() == {"account_id": account_id, "current_points": 0, "lifetime_points": 0}
    assert rank.json()["name"] == "bronze"


def test_unknown_account_is_404(client, catalog):
    response = client.get(f"/api/v1/accounts/{uuid.uuid4()}/balance")

    assert response.status_code == 404


def test_ledger_posting_and_errors(client, catalog):
    account_id = _open(client, points=100)

    overspend = client.post(
        f"/api/v1/accounts/{account_id}/ledger",
        json={"kind": "spend", "points_delta": -500, "reason": "Too much"},
    )
    wrong_sign = client.post(
        f"/api/v1/accounts/{account_id}/ledger",
        json={"kind": "earn", "points_delta": -5, "reason": "Backwards"},
    )
    no_actor = client.post(
        f"/api/v1/accounts/{account_id}/ledger",
        json={"kind": "admin_adjust", "points_delta": 5, "reason": "Who?"},
    )

    assert overspend.status_code == 400
    assert wrong_sign.status_code == 400
    assert no_actor.status_code == 422

    history = client.get(f"/api/v1/accounts/{account_id}/ledger").json()
    assert [entry["points_delta"] for entry in history] == [100]
    assert history[0]["created_by"] == "admin@example.com"

    audit = client.get(f"/api/v1/accounts/{account_id}/audit").json()
    assert audit["consistent"] is True
    assert audit["replayed_current_points"] == 100


def test_award_endpoint_applies_daily_cap(client, catalog):
    account_id = _open(client)
    payload = {"event_type": "purchase", "order_value": 600000, "reference_type": "order", "reference_id": "ORD-1"}

    first = client.post(f"/api/v1/accounts/{account_id}/awards", json=payload).json()
    second = client.post(f"/api/v1/accounts/{account_id}/awards", json=payload).json()

    assert first["awarded"] is True
    assert first["points"] == 50
    assert first["requested_points"] == 60
    assert first["capped_by"] == "daily_cap_reached"
    assert first["entry"]["event_type"] == "purchase"
    assert second["awarded"] is False
    assert second["points"] == 0
    assert second["reason"] == "daily_cap_reached"


def test_award_rejects_unknown_event(client, catalog):
    account_id = _open(client)

    response = client.post(f"/api/v1/accounts/{account_id}/awards", json={"event_type": "dance"})

    assert response.status_code == 422


def test_rank_override_and_history(client, catalog):
    account_id = _open(client, points=1200)

    summary = client.get(f"/api/v1/accounts/{account_id}/points-summary").json()
    assert summary["rank"]["name"] == "silver"
    assert summary["next_rank"] is None

    response = client.put(
        f"/api/v1/accounts/{account_id}/rank",
        json={"rank_id": str(catalog["bronze"]), "actor": "admin@example.com"},
    )
    assert response.status_code == 200
    assert response.json()["reason"] == "admin_override"
    assert response.json()["to_rank"]["name"] == "bronze"

    unchanged = client.put(
        f"/api/v1/accounts/{account_id}/rank",
        json={"rank_id": str(catalog["bronze"]), "actor": "admin@example.com"},
    )
    assert unchanged.status_code == 200
    assert unchanged.json() is None

    missing = client.put(
        f"/api/v1/accounts/{account_id}/rank",
        json={"rank_id": str(uuid.uuid4()), "actor": "admin@example.com"},
    )
    assert missing.status_code == 404

    history = client.get(f"/api/v1/accounts/{account_id}/rank-history").json()
    assert [row["reason"] for row in history] == ["admin_override", "points_threshold", "points_threshold"]


def test_voucher_lifecycle(client, catalog):
    buyer = _open(client, points=500)
    latecomer = _open(client, points=500)
    voucher_id = str(catalog["voucher"])

    available = client.get(f"/api/v1/accounts/{buyer}/vouchers/available").json()
    assert [voucher["code"] for voucher in available] == ["SAVE50K"]

    acquired = client.post(f"/api/v1/accounts/{buyer}/vouchers", json={"voucher_id": voucher_id})
    assert acquired.status_code == 201
    user_voucher_id = acquired.json()["user_voucher_id"]
    assert client.get(f"/api/v1/accounts/{buyer}/balance").json()["current_points"] == 200

    exhausted = client.post(f"/api/v1/accounts/{latecomer}/vouchers", json={"voucher_id": voucher_id})
    assert exhausted.status_code == 409
    assert client.get(f"/api/v1/accounts/{latecomer}/balance").json()["current_points"] == 500

    too_small = client.post(
        f"/api/v1/user-vouchers/{user_voucher_id}/redeem",
        json={"account_id": buyer, "order_id": "ORD-1", "order_value": 100000},
    )
    assert too_small.status_code == 400

    redeemed = client.post(
        f"/api/v1/user-vouchers/{user_voucher_id}/redeem",
        json={"account_id": buyer, "order_id": "ORD-1", "order_value": 450000, "shipping_fee": 30000},
    )
    assert redeemed.status_code == 200
    assert Decimal(redeemed.json()["discount_amount"]) == Decimal("50000")
    assert Decimal(redeemed.json()["final_amount"]) == Decimal("430000")

    reused = client.post(
        f"/api/v1/user-vouchers/{user_voucher_id}/redeem",
        json={"account_id": buyer, "order_id": "ORD-2", "order_value": 450000},
    )
    assert reused.status_code == 409

    revoked = client.post(f"/api/v1/user-vouchers/{user_voucher_id}/revoke", json={"actor": "admin@example.com"})
    assert revoked.status_code == 409

    held = client.get(f"/api/v1/accounts/{buyer}/vouchers", params={"status": "used"}).json()
    assert [item["order_id"] for item in held] == ["ORD-1"]

    stats = client.get(f"/api/v1/accounts/{buyer}/vouchers/stats").json()
    assert stats["used_count"] == 1
    assert Decimal(stats["total_saved"]) == Decimal("50000")


def test_configuration_error_is_reported_distinctly(client, session_factory):
    db = session_factory()
    try:
        db.add_all(
            [
                Rank(name="base", display_name="Base", min_points=0, max_points=100, level=1),
                Rank(name="top", display_name="Top", min_points=200, max_points=None, level=2),
            ]
        )
        db.commit()
    finally:
        db.close()

    response = client.put(f"/api/v1/accounts/{uuid.uuid4()}")

    assert response.status_code == 500
    assert response.json()["detail"]["error"] == "configuration_error"
