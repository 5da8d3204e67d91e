import pytest


def order_payload(shop_id, product_id, quantity=1, **extra):
    data = {
        "shop_id": shop_id,
        "customer": {
            "name": "Awa Mba",
            "phone": "+24106000000",
            "address": "Rue 12",
            "city": "Libreville",
            "district": "Louis",
        },
        "lines": [{"product_id": product_id, "quantity": quantity}],
        "shipping_fee": 2000,
    }
    data.update(extra)
    return data


@pytest.fixture
def product(make_product):
    return make_product(price="8000", stock=5)


def test_health(client):
    assert client.get("/health").json()["success"] is True


def test_create_and_read_order(client, shop, product):
    r = client.post("/orders", json=order_payload(shop.id, product.id, 2))
    assert r.status_code == 201
    body = r.json()
    order = body["order"]
    assert order["number"].startswith("COM-")
    assert order["subtotal"] == 16000
    assert order["total"] == 18000
    assert order["status"] == "pending"
    assert body["payment"]["amount_remaining"] == 18000

    r = client.get(f"/orders/{order['id']}")
    assert r.json()["order"]["lines"][0]["quantity"] == 2
    r = client.get(f"/orders/number/{order['number']}")
    assert r.json()["order"]["id"] == order["id"]

    r = client.get(f"/orders/{order['id']}/lines")
    assert r.json()["totals"]["shipping_fee"] == 2000

    r = client.get(f"/orders/shop/{shop.id}")
    assert r.json()["pagination"]["total"] == 1


def test_validation_errors(client, shop, product):
    r = client.post("/orders", json=order_payload(shop.id, product.id, lines=[]))
    assert r.status_code == 422
    bad_phone = order_payload(shop.id, product.id)
    bad_phone["customer"]["phone"] = "abc"
    assert client.post("/orders", json=bad_phone).status_code == 422


def test_error_envelope(client, shop):
    r = client.get("/orders/999")
    assert r.status_code == 404
    assert r.json() == {"success": False, "error": "not_found", "message": "Заказ 999 не найден"}

    r = client.post("/orders", json=order_payload(shop.id, 12345))
    assert r.status_code == 400
    assert r.json()["error"] == "invalid_input"


def test_status_flow_over_http(client, shop, product, stock_of):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id, 2)).json()["order"]["id"]

    r = client.patch(f"/orders/{order_id}/status", json={"status": "confirmed"})
    assert r.status_code == 200
    assert stock_of(product.id) == 3

    r = client.patch(f"/orders/{order_id}/status", json={"status": "delivered"})
    assert r.status_code == 409
    body = r.json()
    assert body["error"] == "invalid_transition"
    assert body["details"]["from"] == "confirmed"

    r = client.patch(f"/orders/{order_id}/status", json={"status": "cancelled"})
    assert r.json()["order"]["status"] == "cancelled"
    assert stock_of(product.id) == 5


def test_payment_status_update(client, shop, product):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id)).json()["order"]["id"]
    r = client.patch(f"/orders/{order_id}/payment-status",
                     json={"payment_status": "failed", "payment_method": "cash"})
    assert r.json()["order"]["payment_status"] == "failed"
    r = client.patch(f"/orders/{order_id}/payment-status", json={"payment_status": "maybe"})
    assert r.status_code == 400


def test_mobile_payment_round_trip(client, shop, product, gateway, stock_of):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id)).json()["order"]["id"]

    r = client.post(f"/orders/{order_id}/payment",
                    json={"payment_method": "mobile_money", "phone_number": "+24106000000"})
    assert r.status_code == 201
    tx = r.json()["transaction"]
    assert tx["amount"] == 11000

    r = client.post("/payments/mobile", json={
        "reference": tx["reference"], "msisdn": "+24106000000", "payment_system": "airtelmoney",
    })
    bill_id = r.json()["bill_id"]

    r = client.get(f"/payments/verify/{bill_id}")
    assert r.json()["success"] is False
    assert r.json()["state"] == "ready"

    gateway.set_state(bill_id, "paid", ps_transaction_id="AM-77")
    for _ in range(2):
        r = client.get(f"/payments/verify/{bill_id}")
        assert r.json()["success"] is True
    body = r.json()
    assert body["transaction"]["status"] == "paid"
    assert body["order"]["amount_paid"] == 11000
    assert body["order"]["status"] == "confirmed"
    assert stock_of(product.id) == 4


def test_payment_with_unavailable_product(client, db, shop, product):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id, 3)).json()["order"]["id"]
    product.stock = 1
    db.commit()

    r = client.post(f"/orders/{order_id}/payment", json={"payment_method": "mobile_money"})
    assert r.status_code == 400
    assert r.json()["details"]["insufficient_quantities"][0]["available"] == 1


def test_verify_unknown_bill(client):
    r = client.get("/payments/verify/NOPE")
    assert r.status_code == 404
    assert r.json()["error"] == "transaction_not_found"


def test_gateway_down(client, shop, product, gateway):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id)).json()["order"]["id"]
    tx = client.post(f"/orders/{order_id}/payment", json={"payment_method": "mobile_money"}).json()["transaction"]
    gateway.fail = True
    r = client.post("/payments/mobile", json={
        "reference": tx["reference"], "msisdn": "+24106000000", "payment_system": "moovmoney",
    })
    assert r.status_code == 502
    assert r.json()["error"] == "gateway_error"


def test_card_payment(client, shop, product):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id)).json()["order"]["id"]
    tx = client.post(f"/orders/{order_id}/payment", json={"payment_method": "card"}).json()["transaction"]
    r = client.post("/payments/card", json={"transaction_id": tx["id"], "return_url": "https://shop.test/ok"})
    body = r.json()
    assert body["redirect"] is True
    assert body["bill_id"] in body["url"]


def test_transactions_endpoints(client, shop, product):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id)).json()["order"]["id"]
    r = client.post("/transactions", json={"order_id": order_id, "amount": 2200, "payment_method": "cash"})
    assert r.status_code == 201
    tx = r.json()["transaction"]
    assert tx["payment_purpose"] == "delivery_fee"

    assert client.get(f"/transactions/{tx['id']}").json()["transaction"]["reference"] == tx["reference"]
    assert client.get(f"/transactions/reference/{tx['reference']}").json()["transaction"]["id"] == tx["id"]
    assert len(client.get(f"/transactions/order/{order_id}").json()["transactions"]) == 1
    assert client.get(f"/transactions/shop/{shop.id}").json()["pagination"]["total"] == 1
    assert client.get("/transactions", params={"status": "pending"}).json()["pagination"]["total"] == 1

    r = client.put(f"/transactions/{tx['id']}", json={"description": "Livraison"})
    assert r.json()["transaction"]["description"] == "Livraison"

    r = client.patch(f"/transactions/{tx['id']}/status", json={"status": "paid"})
    assert r.json()["transaction"]["status"] == "paid"
    r = client.patch(f"/transactions/{tx['id']}/status", json={"status": "failed"})
    assert r.status_code == 409

    stats = client.get("/transactions/stats").json()["stats"]
    assert stats["total_paid_amount"] == 2200


def test_transaction_amount_mismatch_over_http(client, shop, product):
    order_id = client.post("/orders", json=order_payload(shop.id, product.id)).json()["order"]["id"]
    tx = client.post("/transactions", json={
        "order_id": order_id, "amount": 500, "payment_purpose": "full_payment",
    }).json()["transaction"]
    r = client.patch(f"/transactions/{tx['id']}/status", json={"status": "paid"})
    assert r.status_code == 422
    assert r.json()["error"] == "amount_mismatch"
    assert client.get(f"/transactions/{tx['id']}").json()["transaction"]["needs_review"] is True


def test_cart_endpoints(client, db, shop, product):
    r = client.post("/cart", json={"session_id": "s1", "product_id": product.id, "quantity": 2})
    assert r.status_code == 201
    item_id = r.json()["item"]["id"]

    r = client.patch(f"/cart/item/{item_id}/quantity", json={"quantity": 9})
    assert r.status_code == 400
    assert r.json()["error"] == "insufficient_stock"
    r = client.patch(f"/cart/item/{item_id}/quantity", json={"quantity": 5})
    assert r.json()["item"]["quantity"] == 5

    # остаток упал, пока товар лежал в корзине
    product.stock = 3
    db.commit()
    body = client.get("/cart/s1").json()
    assert body["total_items"] == 3
    assert body["total_sum"] == 24000
    assert body["adjusted_items"][0]["original_quantity"] == 5

    assert client.get("/cart/s1/count").json()["count"] == 1
    r = client.post("/cart", json={"session_id": "s1", "product_id": product.id, "quantity": 1})
    assert r.status_code == 400
    assert r.json()["error"] == "insufficient_stock"

    assert client.delete("/cart/s1").json()["removed"] == 1
    assert client.get(f"/cart/item/{item_id}").status_code == 404


def test_cron_endpoints(client):
    jobs = client.get("/cron/jobs").json()["jobs"]
    assert [j["name"] for j in jobs] == ["expire-transactions"]
    r = client.post("/cron/expire-transactions")
    assert r.json()["result"]["checked"] == 0
