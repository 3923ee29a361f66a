"""HTTP tests for the checkout endpoints."""
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import DatabaseError

from checkout_service.errors import GatewayError
from checkout_service.models import Order

from .support import OTHER_USER, USER, count_rows, stock_of

AUTH = {"X-User-Id": USER}
ITEMS = [
    {"productId": "p1", "price": 19.99, "quantity": 2},
    {"productId": "p2", "price": 29.99, "quantity": 1},
]


def _place_order(client, intent_id="pi_1", headers=AUTH, **body):
    payload = {"items": ITEMS, "addressId": "a1", "paymentIntentId": intent_id}
    payload.update(body)
    return client.post("/api/v1/orders", json=payload, headers=headers)


def test_health_check(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json() == {"message": "Checkout service is running"}


def test_create_intent(client, gateway):
    items = [{"id": "p1", "price": 19.99, "quantity": 2}, {"id": "p2", "price": 29.99, "quantity": 1}]

    response = client.post("/api/v1/payments/create-intent", json={"items": items, "addressId": "a1"},
                           headers=AUTH)

    assert response.status_code == 200
    assert response.json() == {"clientSecret": "pi_created_1_secret", "paymentIntentId": "pi_created_1"}
    assert gateway.created[0].amount == 6997


def test_create_intent_carries_new_address(client, gateway):
    address = {"name": "Ann", "street": "1 Main St", "city": "Springfield", "state": "IL",
               "postalCode": "62701", "country": "US", "saveAddress": True}

    response = client.post("/api/v1/payments/create-intent", json={"items": ITEMS, "address": address},
                           headers=AUTH)

    assert response.status_code == 200
    metadata = gateway.created[0].metadata
    assert metadata["addressId"] == ""
    assert metadata["saveAddress"] == "true"
    assert metadata["addressPostalCode"] == "62701"
    assert metadata["addressCity"] == "Springfield"


def test_create_intent_requires_login(client, gateway):
    response = client.post("/api/v1/payments/create-intent", json={"items": ITEMS})

    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized", "type": "AUTHENTICATION_ERROR"}
    assert gateway.created == []


def test_create_intent_empty_cart(client):
    response = client.post("/api/v1/payments/create-intent", json={"items": []}, headers=AUTH)

    assert response.status_code == 400
    assert response.json()["error"] == "No items in order"


def test_create_intent_gateway_down(client, gateway):
    gateway.fail_with = GatewayError("Payment service error")

    response = client.post("/api/v1/payments/create-intent", json={"items": ITEMS}, headers=AUTH)

    assert response.status_code == 502
    assert response.json()["type"] == "GATEWAY_ERROR"


def test_create_order(client, gateway, seeded):
    gateway.add_intent("pi_1", 6997)

    response = _place_order(client)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    order = body["order"]
    assert order["total"] == 69.97
    assert order["status"] == "PAID"
    assert order["addressId"] == "a1"
    assert order["paymentIntentId"] == "pi_1"
    assert [(i["productId"], i["price"], i["quantity"]) for i in order["items"]] == [
        ("p1", 19.99, 2),
        ("p2", 29.99, 1),
    ]


def test_create_order_twice_returns_same_order(client, gateway, seeded):
    gateway.add_intent("pi_1", 6997)

    first = _place_order(client).json()["order"]
    second = _place_order(client).json()["order"]

    assert first["id"] == second["id"]
    assert count_rows(seeded, Order) == 1


def test_create_order_with_new_address(client, gateway):
    gateway.add_intent("pi_1", 6997)
    address = {"name": "Ada", "street": "9 Elm St", "city": "Portland", "state": "OR",
               "postalCode": "97201", "country": "US", "saveAddress": True}

    response = _place_order(client, addressId=None, address=address)

    assert response.status_code == 201
    assert response.json()["order"]["addressId"] not in (None, "a1")


def test_create_order_requires_login(client, gateway):
    response = _place_order(client, headers={})

    assert response.status_code == 401
    assert gateway.retrieve_calls == []


def test_create_order_empty_items(client, gateway):
    response = _place_order(client, items=[])

    assert response.status_code == 400
    assert response.json() == {"error": "No items in order", "type": "VALIDATION_ERROR"}
    assert gateway.retrieve_calls == []


def test_create_order_malformed_item(client, gateway):
    response = _place_order(client, items=[{"productId": "p1", "price": 19.99, "quantity": 0}])

    assert response.status_code == 400
    body = response.json()
    assert body["type"] == "VALIDATION_ERROR"
    assert body["details"][0]["loc"][-1] == "quantity"


def test_create_order_unpaid_intent(client, gateway, seeded):
    gateway.add_intent("pi_1", 6997, status="requires_payment_method")

    response = _place_order(client)

    assert response.status_code == 400
    assert response.json()["type"] == "PAYMENT_VERIFICATION_ERROR"
    assert count_rows(seeded, Order) == 0


def test_create_order_out_of_stock(client, gateway, seeded):
    gateway.add_intent("pi_1", 1000)

    response = _place_order(client, items=[{"productId": "p3", "price": 5.00, "quantity": 2}])

    assert response.status_code == 409
    assert response.json()["type"] == "INSUFFICIENT_INVENTORY"
    assert response.json()["insufficient"] == ["p3"]
    assert stock_of(seeded, "p3") == 1


def test_create_order_someone_elses_address(client, gateway):
    gateway.add_intent("pi_1", 6997)

    response = _place_order(client, addressId="a2")

    assert response.status_code == 403
    assert response.json()["type"] == "AUTHORIZATION_ERROR"


def test_create_order_gateway_timeout(client, gateway, seeded):
    gateway.fail_with = GatewayError("Payment service unavailable, please retry", retryable=True)

    response = _place_order(client)

    assert response.status_code == 503
    assert count_rows(seeded, Order) == 0


def test_create_order_datastore_failure_hides_details(client, gateway, app, monkeypatch):
    def broken(session, items):
        raise DatabaseError("UPDATE products", {}, Exception("no such table: secret_internal"))

    monkeypatch.setattr(app.state.orders.inventory, "reserve", broken)
    gateway.add_intent("pi_1", 6997)

    response = _place_order(client)

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to create order", "type": "ORDER_CREATION_FAILED"}


def test_unhandled_error_returns_generic_500(app, seeded, gateway, monkeypatch):
    def explode(*args, **kwargs):
        raise RuntimeError("stack trace material")

    monkeypatch.setattr(app.state.orders, "list_orders", explode)
    with TestClient(app, raise_server_exceptions=False) as client:
        response = client.get("/api/v1/orders", headers=AUTH)

    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "type": "INTERNAL_ERROR"}


def test_list_and_get_orders(client, gateway):
    gateway.add_intent("pi_1", 6997)
    order_id = _place_order(client).json()["order"]["id"]

    mine = client.get("/api/v1/orders", headers=AUTH)
    theirs = client.get("/api/v1/orders", headers={"X-User-Id": OTHER_USER})
    one = client.get(f"/api/v1/orders/{order_id}", headers=AUTH)
    hidden = client.get(f"/api/v1/orders/{order_id}", headers={"X-User-Id": OTHER_USER})

    assert [o["id"] for o in mine.json()["orders"]] == [order_id]
    assert theirs.json() == {"orders": []}
    assert one.json()["order"]["total"] == 69.97
    assert hidden.status_code == 404


def test_list_orders_requires_login(client):
    assert client.get("/api/v1/orders").status_code == 401



@pytest.mark.parametrize("method, path", [
    ("post", "/api/v1/stock/items"),
    ("get", "/api/v1/stock/"),
    ("get", "/api/v1/stock/p1"),
])
def test_stock_cannot_be_changed_over_http(client, seeded, method, path):
    response = client.request(method.upper(), path, json={"productId": "p1", "price": 0.01, "quantity": 5},
                              headers=AUTH)

    assert response.status_code in (404, 405)
    assert stock_of(seeded, "p1") == 10
