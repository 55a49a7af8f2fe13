from bson import ObjectId

from conftest import order_payload


def place(client, user, product_id, quantity=1):
    return client.post("/api/orders", json=order_payload((product_id, quantity)), headers=user["headers"]).json()["data"]


def mark_paid(db, order_id):
    db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"payment_status": "paid"}})


def test_admin_routes_require_admin(client, user):
    assert client.get("/api/admin/orders", headers=user["headers"]).status_code == 403
    assert client.get("/api/admin/orders/stats", headers=user["headers"]).status_code == 403
    assert client.get("/api/admin/orders").status_code == 401


def test_list_all_orders_with_status_filter(client, user, other_user, admin_user, make_product):
    bag = make_product()
    first = place(client, user, bag)
    place(client, other_user, bag)
    client.put(f"/api/orders/{first['id']}/cancel", headers=user["headers"])

    everything = client.get("/api/admin/orders", headers=admin_user["headers"]).json()["data"]
    cancelled = client.get("/api/admin/orders", params={"status": "cancelled"}, headers=admin_user["headers"]).json()["data"]

    assert everything["pagination"]["total"] == 2
    assert [o["id"] for o in cancelled["orders"]] == [first["id"]]


def test_order_stats_skip_cancelled(client, user, admin_user, make_product):
    bag = make_product(price=100)
    place(client, user, bag, 2)
    place(client, user, bag, 1)
    dropped = place(client, user, bag, 3)
    client.put(f"/api/orders/{dropped['id']}/cancel", headers=user["headers"])

    stats = client.get("/api/admin/orders/stats", headers=admin_user["headers"]).json()["data"]

    # 200 + 36 + 200 and 100 + 18 + 200
    assert stats["total_orders"] == 2
    assert stats["total_revenue"] == 754
    assert stats["average_order_value"] == 377
    assert stats["by_status"] == {"pending": 2, "cancelled": 1}


def test_refund_paid_order(client, user, admin_user, make_product, db):
    order = place(client, user, make_product(price=1000))
    mark_paid(db, order["id"])

    res = client.post(f"/api/admin/orders/{order['id']}/refund", json={"amount": 500, "reason": "Damaged box"},
                      headers=admin_user["headers"])

    assert res.status_code == 200
    refunded = res.json()["data"]
    assert refunded["payment_status"] == "refunded"
    assert refunded["refund_amount"] == 500
    assert refunded["notes"][-1]["note"] == "Refund processed: ₹500.00 - Damaged box"
    assert refunded["total"] == order["total"]


def test_refund_rules(client, user, admin_user, make_product, db):
    order = place(client, user, make_product(price=1000))
    url = f"/api/admin/orders/{order['id']}/refund"

    unpaid = client.post(url, json={"amount": 10, "reason": "x"}, headers=admin_user["headers"])
    mark_paid(db, order["id"])
    too_much = client.post(url, json={"amount": order["total"] + 1, "reason": "x"}, headers=admin_user["headers"])
    negative = client.post(url, json={"amount": -5, "reason": "x"}, headers=admin_user["headers"])
    missing = client.post(f"/api/admin/orders/{ObjectId()}/refund", json={"amount": 1, "reason": "x"},
                          headers=admin_user["headers"])

    assert unpaid.status_code == 400
    assert too_much.status_code == 400
    assert negative.status_code == 400
    assert missing.status_code == 404


def test_dashboard(client, user, admin_user, make_product, db):
    product_id = make_product(price=100, stock_quantity=12)
    make_product(stock_quantity=3)
    delivered = place(client, user, product_id, 2)
    place(client, user, product_id)
    client.put(f"/api/orders/{delivered['id']}/status", json={"status": "delivered"}, headers=admin_user["headers"])
    db["review"].insert_one({"product_id": product_id, "user_id": user["id"], "status": "pending", "rating": 4})

    res = client.get("/api/admin/dashboard", headers=admin_user["headers"])

    assert res.status_code == 200
    data = res.json()["data"]
    assert data["metrics"] == {
        "total_products": 2,
        "total_orders": 2,
        "total_users": 2,
        "total_revenue": 436,
        "pending_reviews": 1,
        "low_stock_products": 2,
    }
    assert len(data["recent_orders"]) == 2
    assert data["sales_data"][0]["orders"] == 1
    assert data["sales_data"][0]["sales"] == 436


def test_list_users_and_suspend(client, user, other_user, admin_user):
    listing = client.get("/api/admin/users", params={"search": "other"}, headers=admin_user["headers"]).json()["data"]
    assert [u["id"] for u in listing["users"]] == [other_user["id"]]
    assert all("password_hash" not in u for u in listing["users"])

    res = client.patch(f"/api/admin/users/{other_user['id']}/status",
                       json={"status": "suspended", "reason": "Chargebacks"}, headers=admin_user["headers"])

    assert res.status_code == 200
    assert res.json()["data"]["status"] == "suspended"
    assert client.get("/api/users/me", headers=other_user["headers"]).status_code == 403
    suspended = client.get("/api/admin/users", params={"status": "suspended"}, headers=admin_user["headers"])
    active = client.get("/api/admin/users", params={"status": "active"}, headers=admin_user["headers"])
    assert [u["id"] for u in suspended.json()["data"]["users"]] == [other_user["id"]]
    assert other_user["id"] not in {u["id"] for u in active.json()["data"]["users"]}
    assert user["id"] in {u["id"] for u in active.json()["data"]["users"]}


def test_admin_cannot_change_own_status(client, admin_user):
    res = client.patch(f"/api/admin/users/{admin_user['id']}/status", json={"status": "inactive"},
                       headers=admin_user["headers"])

    assert res.status_code == 400


def test_review_queue(client, user, admin_user, make_product):
    product_id = make_product(name="Silk Scarf")
    client.post("/api/reviews", json={"product": product_id, "rating": 4, "title": "Lovely",
                                      "content": "Soft and light, great colours."}, headers=user["headers"])

    res = client.get("/api/admin/reviews", headers=admin_user["headers"])

    reviews = res.json()["data"]["reviews"]
    assert len(reviews) == 1
    assert reviews[0]["product_name"] == "Silk Scarf"
    assert client.get("/api/admin/reviews", params={"status": "approved"},
                      headers=admin_user["headers"]).json()["data"]["reviews"] == []
