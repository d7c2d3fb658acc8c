import pytest
import stripe
from jose import jwt

import tagshop.auth
from conftest import JWT_SECRET


@pytest.fixture
def operator(app):
    # Bypass auth verification for tests
    app.dependency_overrides[tagshop.auth.verify_token] = lambda: True
    yield
    app.dependency_overrides.clear()


def test_stripe_config(client):
    response = client.get("/stripeConfig")

    assert response.status_code == 200
    assert response.json() == {"publishable_key": "pk_test_123", "key_type": "test"}


def test_create_payment_success(client, mocker):
    mock_intent = mocker.Mock()
    mock_intent.id = "pi_123"
    mock_intent.client_secret = "secret_123"
    mock_intent.status = "requires_payment_method"
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_intent)

    response = client.post("/payments", json={"order_id": 100, "contact_id": 3, "amount": 5000, "currency": "usd"})

    assert response.status_code == 200
    assert response.json()["client_secret"] == "secret_123"
    kwargs = create.call_args.kwargs
    assert kwargs["metadata"] == {"orderid": "100", "contactid": "3"}
    assert kwargs["amount"] == 5000
    assert kwargs["api_key"] == "sk_test_123"


def test_create_payment_reuses_existing_intent(client, seed_order, mocker):
    seed_order(7, payment_reference="pi_first")
    existing = mocker.Mock()
    existing.id = "pi_first"
    existing.client_secret = "secret_first"
    existing.status = "requires_payment_method"
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=existing)
    mocker.patch("stripe.PaymentIntent.create", side_effect=Exception("Should not be called"))

    response = client.post("/payments", json={"order_id": 7, "amount": 1999})

    assert response.status_code == 200
    assert response.json()["payment_intent_id"] == "pi_first"


def test_create_payment_rejects_non_positive_amount(client):
    response = client.post("/payments", json={"order_id": 7, "amount": 0})

    assert response.status_code == 400


def test_create_payment_stripe_error(client, mocker):
    mocker.patch(
        "stripe.PaymentIntent.create",
        side_effect=stripe.InvalidRequestError("Amount too small", "amount", code="amount_too_small", http_status=400),
    )

    response = client.post("/payments", json={"amount": 10})

    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "amount_too_small"


def test_get_payment_requires_pi_prefix(client):
    assert client.get("/payments/cs_123").status_code == 400


def test_checkout_session(client, mocker):
    session = mocker.Mock()
    session.id = "cs_test_1"
    session.url = "https://checkout.stripe.com/c/pay/cs_test_1"
    create = mocker.patch("stripe.checkout.Session.create", return_value=session)

    response = client.post(
        "/checkout",
        json={"amount": 1999, "order_id": 7, "success_url": "https://shop/ok", "cancel_url": "https://shop/no"},
    )

    assert response.status_code == 200
    assert response.json() == {"session_id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}
    kwargs = create.call_args.kwargs
    assert kwargs["payment_intent_data"] == {"metadata": {"orderid": "7", "contactid": ""}}
    assert kwargs["line_items"][0]["price_data"]["unit_amount"] == 1999


def test_checkout_requires_amount_or_line_items(client):
    response = client.post("/checkout", json={"success_url": "https://shop/ok", "cancel_url": "https://shop/no"})

    assert response.status_code == 400


def test_reconcile_requires_token(client, seed_order):
    seed_order(7, payment_reference="pi_123")

    assert client.post("/orders/7/reconcile").status_code == 422
    assert client.post("/orders/7/reconcile", headers={"authorization": "Bearer nope"}).status_code == 401


def test_reconcile_marks_paid_and_notifies(client, seed_order, get_order, channel, mocker):
    seed_order(7, payment_reference="pi_123")
    intent = stripe.PaymentIntent.construct_from(
        {"id": "pi_123", "object": "payment_intent", "status": "succeeded", "amount": 1999, "currency": "usd"},
        "sk_test_123",
    )
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent)
    token = jwt.encode({"sub": "ops@example.com"}, JWT_SECRET, algorithm="HS256")

    response = client.post("/orders/7/reconcile", headers={"authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json()["outcome"] == "applied"
    assert response.json()["status"] == "paid"
    assert get_order(7).status == "paid"
    assert len(channel.sent) == 1


def test_reconcile_without_reference(client, seed_order, operator):
    seed_order(7)

    response = client.post("/orders/7/reconcile")

    assert response.status_code == 409


def test_reconcile_unknown_order(client, operator):
    assert client.post("/orders/404/reconcile").status_code == 404


def test_reconcile_failed_intent(client, seed_order, get_order, operator, mocker):
    seed_order(7, status="processing", payment_reference="pi_123")
    intent = stripe.PaymentIntent.construct_from(
        {
            "id": "pi_123",
            "object": "payment_intent",
            "status": "requires_payment_method",
            "last_payment_error": {"code": "card_declined"},
        },
        "sk_test_123",
    )
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent)

    response = client.post("/orders/7/reconcile")

    assert response.json()["event_type"] == "payment_intent.payment_failed"
    assert get_order(7).status == "failed"


def test_create_payment_rejects_out_of_range_order_id(client, mocker):
    create = mocker.patch("stripe.PaymentIntent.create")

    response = client.post("/payments", json={"order_id": 99999999999999999999, "amount": 1999})

    assert response.status_code == 422
    create.assert_not_called()


def test_reconcile_rejects_out_of_range_order_id(client, operator):
    assert client.post("/orders/99999999999999999999/reconcile").status_code == 422


def test_reconcile_recovers_failed_order(client, seed_order, get_order, channel, operator, mocker):
    seed_order(7, status="failed", payment_reference="pi_123")
    intent = stripe.PaymentIntent.construct_from(
        {"id": "pi_123", "object": "payment_intent", "status": "succeeded", "amount": 1999, "currency": "usd"},
        "sk_test_123",
    )
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent)

    response = client.post("/orders/7/reconcile")

    assert response.json()["outcome"] == "applied"
    assert get_order(7).status == "paid"
    assert len(channel.sent) == 1
