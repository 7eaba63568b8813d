"""
test_main.py
============
API tests for the discount engine.

Covers:
- CRUD operations for discounts, including soft vs. hard delete
- Validation errors on create/update
- Automatic selection and coupon codes through /discounts/apply
- Redemption recording, exhaustion, stats and redemption listing
"""

import pytest


# ══════════════════════════════════════════════
#  Helper functions
# ══════════════════════════════════════════════

def create_discount(client, **overrides):
    payload = {
        "name": "Big basket",
        "discount_type": "fixed",
        "discount_value": 20,
        "trigger_type": "cart_total",
        "trigger_condition": {"operator": "gte", "value": 100},
        "is_auto_apply": True,
        "priority": 1,
    }
    payload.update(overrides)
    return client.post("/discounts", json=payload)


def create_quantity_discount(client, **overrides):
    fields = {
        "name": "Bulk buy",
        "discount_type": "percentage",
        "discount_value": 15,
        "trigger_type": "item_quantity",
        "trigger_condition": {"operator": "gte", "quantity": 3},
        "priority": 2,
    }
    fields.update(overrides)
    return create_discount(client, **fields)


def apply(client, cart=None, user=None, coupon_code=None):
    body = {"cart": cart or SAMPLE_CART}
    if user is not None:
        body["user"] = user
    if coupon_code is not None:
        body["coupon_code"] = coupon_code
    return client.post("/discounts/apply", json=body)


def redeem(client, discount_id, amount_saved=10, **extra):
    return client.post("/discounts/redemptions", json={
        "discount_id": discount_id, "amount_saved": amount_saved, **extra,
    })


SAMPLE_CART = {
    "products": [
        {"product_id": "p1", "quantity": 1},
        {"product_id": "p2", "quantity": 1},
        {"product_id": "p3", "quantity": 2},
    ],
    "total_amount": 150.00,
}

CUSTOMER = {"id": "u1", "role": "customer"}


# ══════════════════════════════════════════════
#  CRUD Tests
# ══════════════════════════════════════════════

class TestDiscountCRUD:

    def test_create_discount(self, client):
        resp = create_discount(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["name"] == "Big basket"
        assert body["discount_type"] == "fixed"
        assert body["trigger_condition"] == {"operator": "gte", "value": 100}
        assert body["is_active"] is True
        assert body["usage_count"] == 0
        assert "id" in body

    def test_get_all_discounts(self, client):
        create_discount(client)
        create_quantity_discount(client)
        resp = client.get("/discounts")
        assert resp.status_code == 200
        assert [d["name"] for d in resp.json()] == ["Bulk buy", "Big basket"]

    def test_get_discount_by_id(self, client):
        created = create_discount(client).json()
        resp = client.get(f"/discounts/{created['id']}")
        assert resp.status_code == 200
        assert resp.json() == created

    def test_get_discount_by_coupon_code(self, client):
        created = create_discount(client, coupon_code="BIG20", is_auto_apply=False).json()
        resp = client.get("/discounts/coupon/BIG20")
        assert resp.status_code == 200
        assert resp.json()["id"] == created["id"]

        padded = client.get("/discounts/coupon/%20BIG20%20")
        assert padded.status_code == 200
        assert padded.json()["id"] == created["id"]

    def test_get_discount_not_found(self, client):
        assert client.get("/discounts/nope").status_code == 404
        assert client.get("/discounts/coupon/NOPE").status_code == 404

    def test_update_discount(self, client):
        created = create_discount(client).json()
        resp = client.put(f"/discounts/{created['id']}", json={"priority": 9, "description": "Now urgent"})
        assert resp.status_code == 200
        assert resp.json()["priority"] == 9
        assert resp.json()["description"] == "Now urgent"
        assert resp.json()["discount_value"] == 20

    def test_update_not_found(self, client):
        assert client.put("/discounts/nope", json={"priority": 1}).status_code == 404

    def test_delete_unused_discount(self, client):
        created = create_discount(client).json()
        resp = client.delete(f"/discounts/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "removed"
        assert client.get(f"/discounts/{created['id']}").status_code == 404

    def test_delete_redeemed_discount_deactivates(self, client):
        created = create_discount(client).json()
        redeem(client, created["id"])
        resp = client.delete(f"/discounts/{created['id']}")
        assert resp.status_code == 200
        assert resp.json()["outcome"] == "deactivated"
        fetched = client.get(f"/discounts/{created['id']}")
        assert fetched.status_code == 200
        assert fetched.json()["is_active"] is False

    def test_delete_not_found(self, client):
        assert client.delete("/discounts/nope").status_code == 404


# ══════════════════════════════════════════════
#  Validation Tests
# ══════════════════════════════════════════════

class TestValidation:

    def test_invalid_trigger_type(self, client):
        resp = create_discount(client, trigger_type="moon_phase")
        assert resp.status_code == 422

    def test_percentage_over_100(self, client):
        resp = create_discount(client, discount_type="percentage", discount_value=110)
        assert resp.status_code == 422

    def test_fixed_not_positive(self, client):
        resp = create_discount(client, discount_value=0)
        assert resp.status_code == 422

    def test_condition_not_matching_trigger(self, client):
        resp = create_discount(client, trigger_type="product_combo")
        assert resp.status_code == 422
        assert client.get("/discounts").json() == []

    def test_duplicate_coupon_code(self, client):
        create_discount(client, coupon_code="DUP")
        resp = create_discount(client, name="Again", coupon_code="DUP")
        assert resp.status_code == 409
        assert "already in use" in resp.json()["detail"]

    def test_invalid_update_is_rejected(self, client):
        created = create_discount(client, discount_value=150).json()
        resp = client.put(f"/discounts/{created['id']}", json={"discount_type": "percentage"})
        assert resp.status_code == 422
        assert client.get(f"/discounts/{created['id']}").json()["discount_type"] == "fixed"

    def test_invalid_cart(self, client):
        resp = apply(client, cart={"products": [], "total_amount": 0})
        assert resp.status_code == 422

    @pytest.mark.parametrize("literal", ["NaN", "Infinity"])
    def test_non_finite_numbers_are_rejected(self, client, literal):
        headers = {"Content-Type": "application/json"}
        resp = client.post("/discounts", headers=headers, content=(
            '{"name": "Bad", "discount_type": "fixed", "discount_value": %s, '
            '"trigger_type": "cart_total", "trigger_condition": {"operator": "gt", "value": 0}}' % literal
        ))
        assert resp.status_code == 422
        assert client.get("/discounts").json() == []

        create_discount(client)
        resp = client.post("/discounts/apply", headers=headers, content=(
            '{"cart": {"products": [], "total_amount": %s}}' % literal
        ))
        assert resp.status_code == 422


# ══════════════════════════════════════════════
#  Apply Tests
# ══════════════════════════════════════════════

class TestApplyDiscount:

    def test_higher_priority_wins(self, client):
        create_discount(client)
        bulk = create_quantity_discount(client).json()
        resp = apply(client, user=CUSTOMER)
        assert resp.status_code == 200
        body = resp.json()
        assert body["applied_discount"]["id"] == bulk["id"]
        assert body["original_amount"] == 150.0
        assert body["discount_amount"] == 22.5
        assert body["final_amount"] == 127.5

    def test_no_eligible_discount(self, client):
        create_discount(client, trigger_condition={"operator": "gt", "value": 500})
        resp = apply(client)
        assert resp.status_code == 200
        body = resp.json()
        assert body["applied_discount"] is None
        assert body["discount_amount"] == 0
        assert body["final_amount"] == 150.0

    def test_fixed_discount_is_clamped(self, client):
        create_discount(client, discount_value=50, trigger_condition={"operator": "gt", "value": 0})
        resp = apply(client, cart={"products": [{"product_id": "p1", "quantity": 1}], "total_amount": 30})
        assert resp.json()["discount_amount"] == 30
        assert resp.json()["final_amount"] == 0

    def test_coupon_only_discount_needs_its_code(self, client):
        welcome = create_discount(
            client, name="Welcome", discount_type="percentage", discount_value=10,
            is_auto_apply=False, coupon_code="WELCOME10",
            trigger_condition={"operator": "gt", "value": 0},
        ).json()
        assert apply(client).json()["applied_discount"] is None

        resp = apply(client, coupon_code="WELCOME10")
        assert resp.status_code == 200
        assert resp.json()["applied_discount"]["id"] == welcome["id"]
        assert resp.json()["discount_amount"] == 15.0

    def test_unknown_coupon(self, client):
        resp = apply(client, coupon_code="NOPE")
        assert resp.status_code == 404
        assert "invalid or expired" in resp.json()["detail"]

    def test_expired_coupon(self, client):
        create_discount(client, coupon_code="OLD", end_date="2020-01-01T00:00:00")
        resp = apply(client, coupon_code="OLD")
        assert resp.status_code == 400
        assert "expired" in resp.json()["detail"].lower()

    def test_coupon_not_applicable(self, client):
        create_discount(
            client, coupon_code="STAFF", is_auto_apply=False,
            trigger_type="user_role", trigger_condition={"roles": ["staff"]},
        )
        resp = apply(client, user=CUSTOMER, coupon_code="STAFF")
        assert resp.status_code == 400
        assert "not applicable" in resp.json()["detail"]

    def test_role_discount_for_matching_user(self, client):
        vip = create_discount(
            client, name="VIP", trigger_type="user_role", trigger_condition={"roles": ["vip"]}, priority=5,
        ).json()
        assert apply(client, user=CUSTOMER).json()["applied_discount"] is None
        resp = apply(client, user={"id": "u2", "role": "vip"})
        assert resp.json()["applied_discount"]["id"] == vip["id"]


# ══════════════════════════════════════════════
#  Redemption Tests
# ══════════════════════════════════════════════

class TestRedemptions:

    def test_record_redemption(self, client):
        created = create_discount(client).json()
        resp = redeem(client, created["id"], 20, user_id="u1", order_id="o-1", metadata={"source": "web"})
        assert resp.status_code == 201
        body = resp.json()
        assert body["discount_id"] == created["id"]
        assert body["amount_saved"] == 20
        assert body["metadata"] == {"source": "web"}
        assert client.get(f"/discounts/{created['id']}").json()["usage_count"] == 1

    def test_redeem_unknown_discount(self, client):
        assert redeem(client, "nope").status_code == 404

    def test_amount_must_be_positive(self, client):
        created = create_discount(client).json()
        assert redeem(client, created["id"], 0).status_code == 422

    def test_exhausted(self, client):
        created = create_discount(client, usage_limit=1).json()
        assert redeem(client, created["id"]).status_code == 201
        resp = redeem(client, created["id"])
        assert resp.status_code == 409
        assert "usage limit" in resp.json()["detail"]
        assert client.get(f"/discounts/{created['id']}").json()["usage_count"] == 1

    def test_inactive(self, client):
        created = create_discount(client, is_active=False).json()
        assert redeem(client, created["id"]).status_code == 409

    def test_stats_and_listing(self, client):
        created = create_discount(client).json()
        redeem(client, created["id"], 10, order_id="o-1")
        redeem(client, created["id"], 30, order_id="o-2")

        stats = client.get(f"/discounts/{created['id']}/stats")
        assert stats.status_code == 200
        body = stats.json()
        assert body["discount"]["id"] == created["id"]
        assert body["stats"]["total_redemptions"] == 2
        assert body["stats"]["total_amount_saved"] == 40
        assert body["stats"]["average_amount_saved"] == 20
        assert body["stats"]["first_redemption_at"] is not None

        listing = client.get(f"/discounts/{created['id']}/redemptions").json()
        assert listing["count"] == 2
        assert {r["order_id"] for r in listing["redemptions"]} == {"o-1", "o-2"}

    @pytest.mark.parametrize("path", ["stats", "redemptions"])
    def test_reporting_not_found(self, client, path):
        assert client.get(f"/discounts/nope/{path}").status_code == 404


def test_health_check(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
