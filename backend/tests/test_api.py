"""API route tests"""
import asyncio
from unittest.mock import patch

import pytest
from fastapi import status

from renewal_engine.core.config import settings
from renewal_engine.models import SubscriptionStatus
from renewal_engine.services.webhook_service import IngestResult, IngestStatus

from fakes import ADMIN_HEADERS, signed_headers, webhook_body


@pytest.mark.critical
class TestAuthentication:
    """Test operator authentication"""

    def test_missing_token_rejected(self, client, make_subscription):
        subscription = make_subscription()

        response = client.get(f"/api/subscriptions/{subscription.id}")

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_wrong_token_rejected(self, client, make_subscription):
        subscription = make_subscription()

        response = client.get(f"/api/subscriptions/{subscription.id}", headers={"Authorization": "Bearer nope"})

        assert response.status_code == status.HTTP_401_UNAUTHORIZED

    def test_operator_api_disabled_without_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "")

        response = client.post("/api/scheduler/tick", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE

    def test_public_routes_need_no_token(self, client):
        assert client.get("/health").json() == {"status": "healthy"}
        assert client.get("/metrics").status_code == status.HTTP_200_OK


@pytest.mark.critical
class TestSubscriptionRoutes:
    """Test /api/subscriptions"""

    def test_create_subscription(self, client):
        response = client.post("/api/subscriptions", headers=ADMIN_HEADERS, json={
            "owner_id": "user-42",
            "parent_order_id": 9001,
            "price": "12.50",
            "interval_unit": "week",
            "interval_count": 2,
        })

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == SubscriptionStatus.ACTIVE.value
        assert data["interval_unit"] == "week"
        assert data["payments_made"] == 0
        assert data["next_date"] is not None

    def test_create_validates_input(self, client):
        response = client.post("/api/subscriptions", headers=ADMIN_HEADERS, json={
            "owner_id": "user-42", "parent_order_id": 9001, "price": "-1",
        })

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_get_subscription_with_notes(self, client, make_subscription):
        subscription = make_subscription()

        response = client.get(f"/api/subscriptions/{subscription.id}", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["id"] == subscription.id
        assert "subs_created" in [note["activity_type"] for note in data["notes"]]

    def test_unknown_subscription_is_404(self, client):
        response = client.get("/api/subscriptions/404", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "SubscriptionNotFoundError"

    def test_edit_subscription(self, client, make_subscription):
        subscription = make_subscription()

        response = client.patch(
            f"/api/subscriptions/{subscription.id}", headers=ADMIN_HEADERS, json={"price": "24.99"}
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["price"] == "24.99"

    def test_edit_below_payments_made_is_400(self, client, db_session, make_subscription):
        subscription = make_subscription()
        subscription.payments_made = 3
        db_session.commit()

        response = client.patch(
            f"/api/subscriptions/{subscription.id}", headers=ADMIN_HEADERS, json={"max_payments": 1}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_transition(self, client, make_subscription):
        subscription = make_subscription()

        response = client.post(
            f"/api/subscriptions/{subscription.id}/transition", headers=ADMIN_HEADERS,
            json={"status": "on_hold", "reason": "customer request"},
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == SubscriptionStatus.ON_HOLD.value

    def test_invalid_transition_is_409(self, client, make_subscription):
        subscription = make_subscription(status=SubscriptionStatus.CANCELLED.value)

        response = client.post(
            f"/api/subscriptions/{subscription.id}/transition", headers=ADMIN_HEADERS,
            json={"status": SubscriptionStatus.ON_HOLD.value},
        )

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error"] == "InvalidTransitionError"

    def test_trash_and_restore(self, client, make_subscription):
        subscription = make_subscription()
        client.post(
            f"/api/subscriptions/{subscription.id}/transition", headers=ADMIN_HEADERS,
            json={"status": SubscriptionStatus.TRASH.value},
        )

        response = client.post(f"/api/subscriptions/{subscription.id}/restore", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == SubscriptionStatus.ACTIVE.value

    def test_delete_live_subscription_is_409(self, client, make_subscription):
        subscription = make_subscription()

        response = client.delete(f"/api/subscriptions/{subscription.id}", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_409_CONFLICT

    def test_delete_cancelled_subscription(self, client, make_subscription):
        subscription_id = make_subscription(status=SubscriptionStatus.CANCELLED.value).id

        response = client.delete(f"/api/subscriptions/{subscription_id}", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["deleted"] == subscription_id
        assert response.json()["removed"]["payment_methods"] == 1
        assert client.get(
            f"/api/subscriptions/{subscription_id}", headers=ADMIN_HEADERS
        ).status_code == status.HTTP_404_NOT_FOUND

    def test_related_orders(self, client, make_subscription):
        subscription = make_subscription()
        client.post("/api/scheduler/tick", headers=ADMIN_HEADERS)

        response = client.get(f"/api/subscriptions/{subscription.id}/orders", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_200_OK
        orders = response.json()["orders"]
        assert [o["relation_type"] for o in orders] == ["new", "renew"]
        assert orders[1]["status"] == "paid"


@pytest.mark.high
class TestPaymentMethodRoutes:
    """Test /api/subscriptions/{id}/payment-methods"""

    def test_list_masks_tokens(self, client, make_subscription):
        subscription = make_subscription()

        response = client.get(f"/api/subscriptions/{subscription.id}/payment-methods", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_200_OK
        methods = response.json()
        assert len(methods) == 1
        assert methods[0]["gateway_id"] == "fake"
        assert methods[0]["token"] == "****4242"
        assert methods[0]["is_default"] is True

    def test_save_update_and_delete(self, client, make_subscription):
        subscription = make_subscription(with_payment_method=False)
        base = f"/api/subscriptions/{subscription.id}/payment-methods"

        created = client.post(base, headers=ADMIN_HEADERS, json={"gateway_id": "stripe", "token": "pm_card_1111"})
        assert created.status_code == status.HTTP_201_CREATED
        assert created.json()["token"] == "****1111"

        updated = client.put(f"{base}/stripe", headers=ADMIN_HEADERS, json={"token": "pm_card_9999"})
        assert updated.status_code == status.HTTP_200_OK
        assert updated.json()["token"] == "****9999"

        deleted = client.delete(f"{base}/stripe", headers=ADMIN_HEADERS)
        assert deleted.json() == {"deleted": "stripe"}
        assert client.get(base, headers=ADMIN_HEADERS).json() == []

    def test_unknown_method_is_404(self, client, make_subscription):
        subscription = make_subscription()
        base = f"/api/subscriptions/{subscription.id}/payment-methods"

        assert client.put(f"{base}/square", headers=ADMIN_HEADERS, json={"is_default": True}).status_code == 404
        assert client.delete(f"{base}/square", headers=ADMIN_HEADERS).status_code == 404

    def test_unknown_subscription_is_404(self, client):
        response = client.get("/api/subscriptions/404/payment-methods", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.critical
class TestWebhookRoute:
    """Test POST /api/webhooks/{gateway_id}"""

    def test_accepts_signed_delivery(self, client, make_subscription):
        subscription = make_subscription()

        response = client.post(
            "/api/webhooks/fake",
            content=webhook_body("evt_api_1", "subscription.cancelled", subscription_id=subscription.id),
            headers=signed_headers(),
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "processed"

    def test_redelivery_reports_duplicate(self, client, make_subscription):
        subscription = make_subscription()
        body = webhook_body("evt_api_2", "subscription.cancelled", subscription_id=subscription.id)

        client.post("/api/webhooks/fake", content=body, headers=signed_headers())
        response = client.post("/api/webhooks/fake", content=body, headers=signed_headers())

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "duplicate"

    def test_bad_signature_is_400(self, client):
        response = client.post(
            "/api/webhooks/fake",
            content=webhook_body("evt_api_3", "charge.succeeded"),
            headers={"X-Fake-Signature": "forged"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_malformed_payload_is_400(self, client):
        response = client.post("/api/webhooks/fake", content=b"not json", headers=signed_headers())

        assert response.status_code == status.HTTP_400_BAD_REQUEST

    def test_unknown_gateway_is_404(self, client):
        response = client.post("/api/webhooks/paypal", content=b"{}")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_processing_failure_is_500_for_redelivery(self, client, services, make_subscription):
        subscription = make_subscription()
        body = webhook_body("evt_api_4", "subscription.cancelled", subscription_id=subscription.id)

        with patch.object(services.state_machine, "apply_transition", side_effect=RuntimeError("db down")):
            response = client.post("/api/webhooks/fake", content=body, headers=signed_headers())

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json()["status"] == "failed"

    def test_ingest_runs_off_the_event_loop(self, client, services):
        seen = {}

        def ingest(db, gateway_id, payload, headers):
            try:
                asyncio.get_running_loop()
                seen["on_loop"] = True
            except RuntimeError:
                seen["on_loop"] = False
            return IngestResult(IngestStatus.PROCESSED, "evt_api_5")

        with patch.object(services.webhooks, "ingest", side_effect=ingest):
            response = client.post(
                "/api/webhooks/fake", content=webhook_body("evt_api_5", "charge.succeeded"), headers=signed_headers()
            )

        assert response.status_code == status.HTTP_200_OK
        assert seen == {"on_loop": False}


@pytest.mark.high
class TestSchedulerAndMonitoringRoutes:
    """Test operator-triggered runs and health reporting"""

    def test_tick_renews_due_subscription(self, client, make_subscription, fake_gateway):
        make_subscription()

        response = client.post("/api/scheduler/tick", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["summary"]["renewed"] == 1
        assert len(fake_gateway.calls) == 1

    def test_retries_and_delayed_runs(self, client):
        retries = client.post("/api/scheduler/retries", headers=ADMIN_HEADERS)
        delayed = client.post("/api/scheduler/delayed", headers=ADMIN_HEADERS)

        assert retries.status_code == status.HTTP_200_OK
        assert delayed.status_code == status.HTTP_200_OK
        assert "summary" in retries.json()
        assert delayed.json()["summary"]["claimed"] == 0

    def test_admin_health(self, client, make_subscription):
        make_subscription()
        client.post("/api/scheduler/tick", headers=ADMIN_HEADERS)

        response = client.get("/api/admin/health?days=7", headers=ADMIN_HEADERS)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["window_days"] == 7
        assert data["subscriptions"]["active"] == 1
        assert data["payments"]["paid"] == 1

    def test_metrics_export(self, client, make_subscription):
        make_subscription()
        client.post("/api/scheduler/tick", headers=ADMIN_HEADERS)

        response = client.get("/metrics")

        assert response.status_code == status.HTTP_200_OK
        assert "renewal" in response.text
