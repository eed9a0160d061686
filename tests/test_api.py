"""
API Tests

Tests for the payment method and transaction endpoints.
"""

from fastapi.testclient import TestClient

from conftest import FUTURE_YEAR, USER_ID

CARD = {
    "type": "credit_card",
    "card_holder_name": "Jane Farmer",
    "card_number": "4242 4242 4242 4242",
    "card_type": "Visa",
    "expiry_month": "12",
    "expiry_year": FUTURE_YEAR,
    "is_default": True,
}


def _add_card(client: TestClient, **overrides) -> dict:
    response = client.post(f"/api/v1/users/{USER_ID}/payment-methods", json={**CARD, **overrides})
    assert response.status_code == 201
    return response.json()


def _checkout(client: TestClient, payment_method_id: str, **overrides):
    payload = {
        "order_id": "ORD-1001",
        "user_id": USER_ID,
        "payment_method_id": payment_method_id,
        "items": [{"product_name": "Tomatoes", "unit_price": "4.99", "quantity": 3, "category": "Vegetables"}],
    }
    payload.update(overrides)
    return client.post("/api/v1/transactions", json=payload)


def test_health(client: TestClient):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_add_card_masks_number(client: TestClient):
    data = _add_card(client)

    assert data["masked_card_number"] == "•••• 4242"
    assert data["is_default"] is True
    assert "4242424242424242" not in str(data)
    assert "encrypted_data" not in data


def test_add_payment_method_validation(client: TestClient):
    unknown = client.post(f"/api/v1/users/{USER_ID}/payment-methods", json={"type": "barter"})
    incomplete = client.post(f"/api/v1/users/{USER_ID}/payment-methods", json={"type": "credit_card"})

    assert unknown.status_code == 400
    assert unknown.json()["detail"]["error_code"] == "validation_error"
    assert incomplete.status_code == 400


def test_list_set_default_and_delete(client: TestClient):
    card = _add_card(client)
    cod = client.post(
        f"/api/v1/users/{USER_ID}/payment-methods", json={"type": "cash_on_delivery"}
    ).json()

    listed = client.get(f"/api/v1/users/{USER_ID}/payment-methods").json()
    assert [pm["id"] for pm in listed] == [card["id"], cod["id"]]

    response = client.put(f"/api/v1/users/{USER_ID}/payment-methods/{cod['id']}/default")
    assert response.status_code == 200
    listed = client.get(f"/api/v1/users/{USER_ID}/payment-methods").json()
    assert [pm["id"] for pm in listed if pm["is_default"]] == [cod["id"]]

    assert client.delete(f"/api/v1/users/{USER_ID}/payment-methods/{cod['id']}").status_code == 204
    assert client.delete(f"/api/v1/users/{USER_ID}/payment-methods/{cod['id']}").status_code == 404
    listed = client.get(f"/api/v1/users/{USER_ID}/payment-methods").json()
    assert [pm["id"] for pm in listed] == [card["id"]]


def test_set_default_unknown_method(client: TestClient):
    response = client.put(f"/api/v1/users/{USER_ID}/payment-methods/missing/default")

    assert response.status_code == 404
    assert response.json()["detail"]["error_code"] == "payment_method_not_found"


def test_checkout_quote(client: TestClient):
    response = client.post("/api/v1/checkout/quote", json={"subtotal": "14.97"})

    assert response.status_code == 200
    assert response.json() == {
        "subtotal": "14.97",
        "tax": "1.27",
        "shipping": "5.99",
        "discount": "0.00",
        "total": "22.23",
    }


def test_checkout_quote_rejects_large_discount(client: TestClient):
    response = client.post("/api/v1/checkout/quote", json={"subtotal": "10.00", "discount": "50.00"})

    assert response.status_code == 400


def test_create_transaction(client: TestClient, spy_adapter):
    card = _add_card(client)

    response = _checkout(client, card["id"])

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "completed"
    assert data["total_amount"] == "22.23"
    assert data["card_last4"] == "4242"
    assert data["items"][0]["category"] == "Vegetables"
    assert spy_adapter.calls == 1

    fetched = client.get(f"/api/v1/transactions/{data['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["processor_transaction_id"] == data["processor_transaction_id"]

    history = client.get(f"/api/v1/users/{USER_ID}/transactions").json()
    assert [transaction["id"] for transaction in history] == [data["id"]]


def test_create_transaction_with_invalid_method_returns_failed(client: TestClient):
    response = _checkout(client, "missing")

    assert response.status_code == 201
    assert response.json()["status"] == "failed"
    assert response.json()["failure_reason"] == "Invalid payment method"


def test_create_transaction_empty_cart(client: TestClient):
    card = _add_card(client)

    response = _checkout(client, card["id"], items=[])

    assert response.status_code == 400
    assert response.json()["detail"]["error_code"] == "validation_error"


def test_transaction_not_found(client: TestClient):
    assert client.get("/api/v1/transactions/missing").status_code == 404
    assert client.post("/api/v1/transactions/missing/retry").status_code == 404


def test_retry_completed_transaction_conflicts(client: TestClient):
    card = _add_card(client)
    transaction = _checkout(client, card["id"]).json()

    response = client.post(f"/api/v1/transactions/{transaction['id']}/retry")

    assert response.status_code == 409
    assert response.json()["detail"]["error_code"] == "invalid_transition"


def test_refund_flow(client: TestClient):
    card = _add_card(client)
    transaction = _checkout(client, card["id"]).json()

    partial = client.post(
        f"/api/v1/transactions/{transaction['id']}/refund",
        json={"reason": "One crate missing", "amount": "4.99"},
    )
    assert partial.status_code == 200
    assert partial.json()["status"] == "partially_refunded"
    assert partial.json()["refunded_amount"] == "4.99"

    again = client.post(f"/api/v1/transactions/{transaction['id']}/refund", json={"reason": "Again"})
    assert again.status_code == 409


def test_refund_amount_too_large(client: TestClient):
    card = _add_card(client)
    transaction = _checkout(client, card["id"]).json()

    response = client.post(
        f"/api/v1/transactions/{transaction['id']}/refund",
        json={"reason": "Too much", "amount": "100.00"},
    )

    assert response.status_code == 400
