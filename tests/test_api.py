"""Tests for the FastAPI HTTP surface."""

import httpx
import pytest
from fastapi.testclient import TestClient

from livekart_orders.config import Settings
from livekart_orders.identity import HttpIdentityVerifier
from livekart_orders.main import create_app

from conftest import FakeRedis, FakeVerifier

ADDRESS = {"street": "1 Main St", "city": "Springfield", "zipCode": "12345"}


def auth(token="customer-token"):
    return {"Authorization": f"Bearer {token}"}


def order_body(*items, **extra):
    body = {
        "items": [{"product_id": pid, "quantity": qty} for pid, qty in items],
        "shippingAddress": ADDRESS,
        "paymentMethod": "card",
    }
    body.update(extra)
    return body


@pytest.fixture
def redis():
    return FakeRedis()


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def client(seeded_db_url, redis, verifier):
    app = create_app(Settings(database_url=seeded_db_url), redis=redis, verifier=verifier)
    with TestClient(app) as client:
        yield client


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "order-service"}


class TestPlaceOrder:
    def test_creates_order(self, client, redis, count_rows):
        response = client.post("/orders", json=order_body(("p1", 2)), headers=auth())
        assert response.status_code == 201
        data = response.json()
        assert data["success"] is True
        order = data["order"]
        assert order["total_amount"] == 20.0
        assert order["status"] == "pending"
        assert order["user_id"] == "user-1"
        assert order["payment_method"] == "card"
        assert order["shipping_address"]["zipCode"] == "12345"
        assert order["items"] == [
            {
                "product_id": "p1",
                "title": "Mechanical Keyboard",
                "unit_price": 10.0,
                "quantity": 2,
                "line_subtotal": 20.0,
                "vendor_id": "vendor-1",
            }
        ]
        assert count_rows("orders") == 1
        assert len(redis.published) == 1

    def test_client_total_and_ids_are_ignored(self, client):
        body = order_body(
            ("p1", 1),
            totalAmount=0.01,
            order_id="client-order-id",
            user_id="someone-else",
        )
        body["items"][0]["price"] = 0.01
        response = client.post("/orders", json=body, headers=auth())
        assert response.status_code == 201
        order = response.json()["order"]
        assert order["total_amount"] == 10.0
        assert order["order_id"] != "client-order-id"
        assert order["user_id"] == "user-1"

    def test_product_id_aliases(self, client):
        body = order_body()
        body["items"] = [{"productId": "p1", "quantity": 1}, {"id": "p2", "quantity": 1}]
        response = client.post("/orders", json=body, headers=auth())
        assert response.status_code == 201
        assert [i["product_id"] for i in response.json()["order"]["items"]] == ["p1", "p2"]

    def test_duplicate_product_lines_stay_separate(self, client):
        response = client.post(
            "/orders", json=order_body(("p1", 1), ("p1", 1)), headers=auth()
        )
        assert response.status_code == 201
        order = response.json()["order"]
        assert len(order["items"]) == 2
        assert order["total_amount"] == 20.0


class TestValidation:
    def test_empty_items(self, client, count_rows):
        response = client.post("/orders", json=order_body(), headers=auth())
        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "validation_error"
        assert data["message"] == "Order must contain at least one item"
        assert data["retryable"] is False
        assert count_rows("orders") == 0

    @pytest.mark.parametrize("quantity", [0, -2, 1.5, "2"])
    def test_bad_quantity(self, client, count_rows, quantity):
        response = client.post("/orders", json=order_body(("p1", quantity)), headers=auth())
        assert response.status_code == 400
        assert count_rows("orders") == 0

    def test_missing_shipping_address(self, client):
        body = order_body(("p1", 1))
        del body["shippingAddress"]
        response = client.post("/orders", json=body, headers=auth())
        assert response.status_code == 400
        assert response.json()["message"] == "Valid shipping address is required"

    def test_incomplete_shipping_address(self, client):
        response = client.post(
            "/orders",
            json=order_body(("p1", 1), shippingAddress={"city": "Springfield"}),
            headers=auth(),
        )
        assert response.status_code == 400
        assert "street" in response.json()["message"]

    def test_malformed_json(self, client):
        response = client.post(
            "/orders",
            content=b"{not json",
            headers={**auth(), "Content-Type": "application/json"},
        )
        assert response.status_code == 400


class TestAuthentication:
    def test_missing_token(self, client, count_rows):
        response = client.post("/orders", json=order_body(("p1", 1)))
        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"
        assert count_rows("orders") == 0

    def test_invalid_token(self, client):
        response = client.post("/orders", json=order_body(("p1", 1)), headers=auth("bogus"))
        assert response.status_code == 401

    def test_auth_checked_before_body(self, client):
        response = client.post("/orders", json=order_body())
        assert response.status_code == 401

    def test_auth_disabled_mode(self, seeded_db_url, verifier):
        settings = Settings(database_url=seeded_db_url, auth_mode="disabled")
        app = create_app(settings, redis=FakeRedis(), verifier=verifier)
        with TestClient(app) as client:
            response = client.post("/orders", json=order_body(("p1", 1)))
        assert response.status_code == 201
        assert response.json()["order"]["user_id"] == "local-dev"
        assert verifier.calls == 0


class TestBusinessErrors:
    def test_product_not_found(self, client, count_rows):
        response = client.post(
            "/orders", json=order_body(("p1", 1), ("p-missing", 1)), headers=auth()
        )
        assert response.status_code == 404
        data = response.json()
        assert data["error"] == "product_not_found"
        assert data["product_id"] == "p-missing"
        assert count_rows("orders") == 0

    def test_insufficient_stock(self, client, count_rows):
        response = client.post("/orders", json=order_body(("p1", 6)), headers=auth())
        assert response.status_code == 409
        data = response.json()
        assert data["error"] == "insufficient_stock"
        assert data["available"] == 5
        assert count_rows("orders") == 0

    def test_stock_boundary(self, client):
        response = client.post("/orders", json=order_body(("p1", 5)), headers=auth())
        assert response.status_code == 201


class TestIdempotency:
    def test_header_key_replay(self, client, count_rows):
        headers = {**auth(), "Idempotency-Key": "checkout-42"}
        first = client.post("/orders", json=order_body(("p1", 2)), headers=headers)
        second = client.post("/orders", json=order_body(("p1", 2)), headers=headers)

        assert first.status_code == second.status_code == 201
        assert first.json() == second.json()
        assert count_rows("orders") == 1

    def test_body_key_replay(self, client, count_rows):
        body = order_body(("p1", 1), idempotency_key="checkout-43")
        first = client.post("/orders", json=body, headers=auth())
        second = client.post("/orders", json=body, headers=auth())
        assert first.json()["order"]["order_id"] == second.json()["order"]["order_id"]
        assert count_rows("orders") == 1

    def test_key_reused_with_different_body(self, client, count_rows):
        headers = {**auth(), "Idempotency-Key": "checkout-44"}
        client.post("/orders", json=order_body(("p1", 1)), headers=headers)
        response = client.post("/orders", json=order_body(("p1", 2)), headers=headers)
        assert response.status_code == 422
        assert response.json()["error"] == "idempotency_key_reused"
        assert count_rows("orders") == 1

    def test_same_key_different_users(self, client, count_rows):
        body = order_body(("p1", 1), idempotency_key="shared")
        first = client.post("/orders", json=body, headers=auth("customer-token"))
        second = client.post("/orders", json=body, headers=auth("other-token"))
        assert first.json()["order"]["order_id"] != second.json()["order"]["order_id"]
        assert count_rows("orders") == 2

    def test_overlong_header_key_is_rejected(self, client, count_rows):
        headers = {**auth(), "Idempotency-Key": "k" * 256}
        response = client.post("/orders", json=order_body(("p1", 1)), headers=headers)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert count_rows("orders") == 0

    def test_max_length_header_key_is_accepted(self, client):
        headers = {**auth(), "Idempotency-Key": "k" * 255}
        response = client.post("/orders", json=order_body(("p1", 1)), headers=headers)
        assert response.status_code == 201


class TestCors:
    def test_preflight(self, client):
        response = client.options(
            "/orders",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "Authorization, Content-Type",
            },
        )
        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"

    def test_bare_options(self, client):
        response = client.options("/orders")
        assert response.status_code == 200
        assert response.content == b""

    def test_error_responses_carry_cors_headers(self, client):
        response = client.post(
            "/orders",
            json=order_body(("p1", 1)),
            headers={"Origin": "http://localhost:3000"},
        )
        assert response.status_code == 401
        assert response.headers["access-control-allow-origin"] == "*"

    def test_unexpected_error_carries_cors_headers(self, seeded_db_url, count_rows):
        class BrokenVerifier:
            async def verify(self, token):
                raise RuntimeError("verifier bug")

        app = create_app(
            Settings(database_url=seeded_db_url), redis=FakeRedis(), verifier=BrokenVerifier()
        )
        with TestClient(app) as client:
            response = client.post(
                "/orders",
                json=order_body(("p1", 1)),
                headers={**auth(), "Origin": "http://localhost:3000"},
            )
        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"
        assert response.headers["access-control-allow-origin"] == "*"
        assert count_rows("orders") == 0

    def test_identity_provider_html_is_503_with_cors(self, seeded_db_url):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>Bad Gateway</html>")
        )
        verifier = HttpIdentityVerifier(
            httpx.AsyncClient(transport=transport), "https://auth.example.com/userInfo"
        )
        app = create_app(Settings(database_url=seeded_db_url), redis=FakeRedis(), verifier=verifier)
        with TestClient(app) as client:
            response = client.post(
                "/orders",
                json=order_body(("p1", 1)),
                headers={**auth(), "Origin": "http://localhost:3000"},
            )
        assert response.status_code == 503
        assert response.json()["retryable"] is True
        assert response.headers["access-control-allow-origin"] == "*"


class TestListOrders:
    @pytest.fixture
    def placed(self, client):
        client.post("/orders", json=order_body(("p1", 1), ("p2", 1)), headers=auth())
        client.post("/orders", json=order_body(("p2", 2)), headers=auth("other-token"))

    def test_customer_sees_own_orders(self, client, placed):
        data = client.get("/orders", headers=auth()).json()
        assert data["success"] is True
        assert data["total"] == 1
        assert data["orders"][0]["user_id"] == "user-1"

    def test_admin_sees_all_orders(self, client, placed):
        data = client.get("/orders", headers=auth("admin-token")).json()
        assert data["total"] == 2

    def test_vendor_sees_only_own_items(self, client, placed):
        data = client.get("/orders", headers=auth("vendor-token")).json()
        assert data["total"] == 1
        assert [i["product_id"] for i in data["orders"][0]["items"]] == ["p1"]

    def test_pagination(self, client, placed):
        data = client.get("/orders?limit=1&offset=1", headers=auth("admin-token")).json()
        assert data["count"] == 1
        assert data["total"] == 2

    def test_requires_auth(self, client):
        assert client.get("/orders").status_code == 401


class TestGetOrder:
    def test_owner_can_read(self, client):
        created = client.post("/orders", json=order_body(("p1", 1)), headers=auth()).json()
        order_id = created["order"]["order_id"]
        response = client.get(f"/orders/{order_id}", headers=auth())
        assert response.status_code == 200
        assert response.json()["order"] == created["order"]

    def test_other_customer_gets_404(self, client):
        created = client.post("/orders", json=order_body(("p1", 1)), headers=auth()).json()
        order_id = created["order"]["order_id"]
        response = client.get(f"/orders/{order_id}", headers=auth("other-token"))
        assert response.status_code == 404
        assert response.json()["error"] == "order_not_found"

    def test_unknown_order(self, client):
        response = client.get("/orders/does-not-exist", headers=auth("admin-token"))
        assert response.status_code == 404
