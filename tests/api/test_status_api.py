"""Tests for status polling, the live stream endpoint guards and the browser return redirect.

The streaming body itself is covered against the generator directly in
tests/payments/test_distributor.py; here only the request validation paths are
exercised over HTTP.
"""

from urllib.parse import parse_qs, urlsplit

import pytest
from fastapi.testclient import TestClient

pytestmark = pytest.mark.integration


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


class TestStatusEndpoint:
    def test_returns_current_snapshot(self, api_client: TestClient, db):
        db.seed(42, status="PENDING", status_detail="pending_waiting_payment")

        response = api_client.get("/mercadopago/status", params={"request_id": "42"})

        assert response.status_code == 200
        data = response.json()
        assert data["request_id"] == 42
        assert data["status"] == "PENDING"
        assert data["status_detail"] == "pending_waiting_payment"
        assert data["updated_at"] is not None

    @pytest.mark.parametrize("params", [{}, {"request_id": ""}, {"request_id": "abc"}, {"request_id": "-5"}])
    def test_invalid_request_id_is_400(self, api_client: TestClient, params):
        response = api_client.get("/pagbank/status", params=params)
        assert response.status_code == 400

    def test_unknown_order_is_404(self, api_client: TestClient):
        response = api_client.get("/pagbank/status", params={"request_id": "777"})
        assert response.status_code == 404

    def test_unknown_provider_is_404(self, api_client: TestClient, db):
        db.seed(42)
        response = api_client.get("/stripe/status", params={"request_id": "42"})
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Live stream (validation only)
# ---------------------------------------------------------------------------


class TestStreamEndpoint:
    def test_missing_request_id_is_400(self, api_client: TestClient):
        response = api_client.get("/mercadopago/stream")
        assert response.status_code == 400

    def test_unknown_order_is_404(self, api_client: TestClient):
        response = api_client.get("/mercadopago/stream", params={"request_id": "404"})
        assert response.status_code == 404

    def test_unknown_provider_is_404(self, api_client: TestClient):
        response = api_client.get("/stripe/stream", params={"request_id": "1"})
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Browser return
# ---------------------------------------------------------------------------


def _redirect(client: TestClient, path: str, **params):
    response = client.get(path, params=params, follow_redirects=False)
    assert response.status_code == 303
    assert response.headers["cache-control"] == "no-store"
    location = urlsplit(response.headers["location"])
    return location.path, {k: v[0] for k, v in parse_qs(location.query).items()}


class TestReturnRedirect:
    def test_paid_order_goes_to_success(self, api_client: TestClient, db):
        db.seed(42, status="PAID", payment_id="999")

        path, query = _redirect(api_client, "/mercadopago/return", external_reference="42", payment_id="999")

        assert path == "/payment-success"
        assert query == {"ref": "42", "payment_id": "999"}

    def test_pending_order_goes_to_pending(self, api_client: TestClient, db):
        db.seed(43, status="CREATED", checkout_id="pref-43")

        path, query = _redirect(api_client, "/mercadopago/return", preference_id="pref-43")

        assert path == "/payment-pending"
        assert query == {"ref": "43"}

    def test_rejected_order_goes_to_failure(self, api_client: TestClient, db):
        db.seed(44, status="REJECTED", payment_id="PAY-44")

        path, query = _redirect(api_client, "/pagbank/return", payment_id="PAY-44")

        assert path == "/payment-fail"
        assert query == {"ref": "44"}

    def test_paypal_token_resolves_checkout(self, api_client: TestClient, db):
        db.seed(45, status="PAID", checkout_id="ORDER-45")

        path, query = _redirect(api_client, "/paypal/return", token="ORDER-45")

        assert path == "/payment-success"
        assert query == {"ref": "45"}

    def test_unknown_order_uses_provider_hint(self, api_client: TestClient):
        path, query = _redirect(api_client, "/mercadopago/return", collection_status="approved", collection_id="1")
        assert path == "/payment-success"
        assert query == {"payment_id": "1"}

    def test_unknown_order_without_hint_fails(self, api_client: TestClient):
        path, query = _redirect(api_client, "/mercadopago/return")
        assert path == "/payment-fail"
        assert query == {}

    def test_unknown_provider_is_404(self, api_client: TestClient):
        response = api_client.get("/stripe/return", follow_redirects=False)
        assert response.status_code == 404
