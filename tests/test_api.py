import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe
from starlette.testclient import TestClient

import ledger_codec
from main import create_app
from records import FeatureId, LicenseRecord, LicenseStatus

WEBHOOK_SECRET = "whsec_test_secret"


def _signed(payload: dict, secret: str = WEBHOOK_SECRET):
    body = json.dumps(payload)
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"), f"{timestamp}.{body}".encode("utf-8"), hashlib.sha256
    ).hexdigest()
    return body, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def _completed(serial=None, features=None):
    metadata = {}
    if serial is not None:
        metadata["serial_number"] = serial
    if features is not None:
        metadata["features_purchased"] = features
    return {
        "id": "evt_test",
        "type": "checkout.session.completed",
        "data": {"object": {"id": "cs_test", "metadata": metadata}},
    }


def _post_event(client, event):
    body, headers = _signed(event)
    return client.post("/stripe-webhook", content=body, headers=headers)


def test_index(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "active" in response.text


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["records"] == 0
    assert body["dirty"] is False


def test_check_license_not_found(client):
    response = client.get("/check-license/XZ77")
    assert response.status_code == 404
    assert response.json() == {"error": "License not found"}


def test_webhook_activates_license(client, today):
    response = _post_event(client, _completed("xz77", "feature-3d-models"))
    assert response.status_code == 200
    assert response.json() == {"received": True}

    response = client.get("/check-license/XZ77")
    assert response.status_code == 200
    assert response.json() == {
        "status": "valid",
        "activation_date": today.isoformat(),
        "expires": "2027-10-18",
        "activeFeatures": ["3d-models"],
    }


def test_webhook_merges_features(client):
    _post_event(client, _completed("XZ77", "feature-3d-models"))
    _post_event(client, _completed("XZ77", "feature-parallax,feature-3d-models"))

    response = client.get("/check-license/xz77")
    assert response.json()["activeFeatures"] == ["3d-models", "parallax"]


def test_webhook_commits_ledger(client, remote, locator):
    _post_event(client, _completed("XZ77", "feature-ndi"))
    assert b"XZ77,valid," in remote.peek(locator).content
    assert client.get("/health").json()["dirty"] is False


def test_webhook_without_serial_is_acknowledged(client, remote):
    response = _post_event(client, _completed(features="feature-ndi"))
    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert client.get("/health").json()["records"] == 0
    assert remote.commits == 0


def test_webhook_ignores_other_events(client):
    event = _completed("XZ77", "feature-ndi")
    event["type"] = "payment_intent.created"
    assert _post_event(client, event).status_code == 200
    assert client.get("/check-license/XZ77").status_code == 404


def test_webhook_rejects_bad_signature(client):
    body, headers = _signed(_completed("XZ77"), secret="whsec_wrong")
    response = client.post("/stripe-webhook", content=body, headers=headers)
    assert response.status_code == 400
    assert client.get("/check-license/XZ77").status_code == 404


def test_webhook_rejects_missing_signature(client):
    response = client.post("/stripe-webhook", content=json.dumps(_completed("XZ77")))
    assert response.status_code == 400


def test_loads_existing_ledger_on_startup(remote, locator, store):
    record = LicenseRecord(
        serial="AB12",
        status=LicenseStatus.EXPIRED,
        active_features=frozenset({FeatureId.NDI}),
    )
    remote.seed(locator, ledger_codec.encode({"AB12": record}).encode("utf-8"))

    with TestClient(create_app(store)) as client:
        response = client.get("/check-license/ab12")
    assert response.status_code == 200
    assert response.json()["status"] == "expired"
    assert response.json()["activeFeatures"] == ["ndi"]


class TestCheckout:

    @pytest.fixture
    def stripe_calls(self, monkeypatch):
        calls = {}

        def create_customer(**kwargs):
            calls["customer"] = kwargs
            return SimpleNamespace(id="cus_test")

        def create_session(**kwargs):
            calls["session"] = kwargs
            return SimpleNamespace(id="cs_test", url="https://checkout.stripe.test/cs_test")

        monkeypatch.setattr(stripe.Customer, "create", create_customer)
        monkeypatch.setattr(stripe.checkout.Session, "create", create_session)
        return calls

    def test_creates_session(self, client, stripe_calls):
        response = client.post("/create-checkout-session", json={
            "customerEmail": "buyer@example.com",
            "serialNumber": "xz77",
            "cart": [
                {"id": "dp-pro-base", "name": "DP Pro", "options": {"objectives": "75mm", "care": "plus"}},
                {"id": "feature-3d-models"},
                {"id": "feature-ndi"},
            ],
        })
        assert response.status_code == 200
        assert response.json() == {"url": "https://checkout.stripe.test/cs_test"}

        session = stripe_calls["session"]
        assert stripe_calls["customer"] == {"email": "buyer@example.com"}
        assert session["customer"] == "cus_test"
        assert session["mode"] == "payment"
        assert [i["price_data"]["unit_amount"] for i in session["line_items"]] == [
            899000 + 35000 + 49000, 12900, 22000,
        ]
        assert session["line_items"][1]["price_data"]["product_data"]["name"] == "feature-3d-models"
        assert session["metadata"] == {
            "serial_number": "XZ77",
            "features_purchased": "feature-3d-models,feature-ndi",
        }

    def test_no_serial_no_metadata(self, client, stripe_calls):
        response = client.post("/create-checkout-session", json={
            "customerEmail": "buyer@example.com",
            "cart": [{"id": "license-base"}],
        })
        assert response.status_code == 200
        assert stripe_calls["session"]["metadata"] == {}

    @pytest.mark.parametrize("body", [
        {"customerEmail": "buyer@example.com", "cart": []},
        {"cart": [{"id": "license-base"}]},
    ])
    def test_missing_data(self, client, stripe_calls, body):
        response = client.post("/create-checkout-session", json=body)
        assert response.status_code == 400
        assert "session" not in stripe_calls

    def test_unknown_product(self, client, stripe_calls):
        response = client.post("/create-checkout-session", json={
            "customerEmail": "buyer@example.com",
            "cart": [{"id": "free-microscope"}],
        })
        assert response.status_code == 400
        assert "free-microscope" in response.json()["error"]
        assert "session" not in stripe_calls

    def test_stripe_error(self, client, monkeypatch):
        def create_customer(**kwargs):
            raise stripe.InvalidRequestError("No such customer", param="email", http_status=402)

        monkeypatch.setattr(stripe.Customer, "create", create_customer)
        response = client.post("/create-checkout-session", json={
            "customerEmail": "buyer@example.com",
            "cart": [{"id": "license-base"}],
        })
        assert response.status_code == 402
