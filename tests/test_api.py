"""
HTTP API tests using the Flask test client
"""

from typing import Any

import pytest
from flask.testing import FlaskClient

from delivery_rotation import api
from delivery_rotation.kernel.time import TestTimeProvider
from delivery_rotation.service import DeliveryRotation
from tests.helpers import BUILDER_ID, DELIVERY, MATERIALS, PICKUP, register_nearby_providers

BUILDER = {"X-Actor-Id": BUILDER_ID, "X-Actor-Role": "builder"}
ADMIN = {"X-Actor-Id": "ops_1", "X-Actor-Role": "admin"}


def provider_headers(provider_id: str) -> dict[str, str]:
    return {"X-Actor-Id": provider_id, "X-Actor-Role": "delivery_provider"}


@pytest.fixture
def client(rotation: DeliveryRotation, monkeypatch: pytest.MonkeyPatch) -> FlaskClient:
    # Module-level binding is restored after each test
    monkeypatch.setattr(api, "_rotation", None)
    app = api.initialize_api(rotation)
    app.config["TESTING"] = True
    return app.test_client()


def create(client: FlaskClient, **overrides: Any) -> dict[str, Any]:
    body = {
        "pickup": PICKUP,
        "delivery": DELIVERY,
        "materials": MATERIALS,
        "supplier_id": "sup_1",
        **overrides,
    }
    response = client.post("/requests", json=body, headers=BUILDER)
    assert response.status_code == 201, response.get_json()
    return response.get_json()


def contacted(request: dict[str, Any]) -> str | None:
    for entry in request["queue"]:
        if entry["status"] == "contacted":
            return entry["provider_id"]
    return None


class TestRequests:
    def test_create_contacts_first_provider(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 2)

        created = create(client)

        assert created["builder_id"] == BUILDER_ID
        assert created["status"] == "pending"
        assert contacted(created) == "p1"

    def test_missing_identity_headers(self, client: FlaskClient) -> None:
        response = client.post(
            "/requests", json={"pickup": PICKUP, "delivery": DELIVERY, "materials": MATERIALS}
        )

        assert response.status_code == 400
        assert response.get_json()["error"] == "ValidationError"

    def test_invalid_body(self, client: FlaskClient) -> None:
        response = client.post("/requests", data="not json", headers=BUILDER)
        assert response.status_code == 400

        response = client.post("/requests", json={"pickup": PICKUP}, headers=BUILDER)
        assert response.status_code == 400
        assert response.get_json()["field"] == "materials"

    def test_supplier_cannot_create(self, client: FlaskClient) -> None:
        response = client.post(
            "/requests",
            json={"pickup": PICKUP, "delivery": DELIVERY, "materials": MATERIALS},
            headers={"X-Actor-Id": "sup_1", "X-Actor-Role": "supplier"},
        )

        assert response.status_code == 403

    def test_unknown_request(self, client: FlaskClient) -> None:
        response = client.get("/requests/req_missing")

        assert response.status_code == 404
        assert response.get_json()["error"] == "RequestNotFound"

    def test_status_lists_queue(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        register_nearby_providers(rotation, 3)
        created = create(client)

        response = client.get(f"/requests/{created['request_id']}")

        assert response.status_code == 200
        body = response.get_json()
        assert [e["provider_id"] for e in body["queue"]] == ["p1", "p2", "p3"]
        assert response.headers["X-Correlation-ID"]

    def test_correlation_id_is_echoed(self, client: FlaskClient) -> None:
        response = client.get("/health/live", headers={"X-Correlation-ID": "cid-123"})

        assert response.headers["X-Correlation-ID"] == "cid-123"


class TestResponses:
    def test_reject_rotates_to_next_provider(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/responses",
            json={"action": "reject", "message": "Truck in service"},
            headers=provider_headers("p1"),
        )

        assert response.status_code == 200
        assert contacted(response.get_json()) == "p2"

    def test_duplicate_response_conflicts(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)
        url = f"/requests/{created['request_id']}/responses"

        client.post(url, json={"action": "reject"}, headers=provider_headers("p1"))
        response = client.post(url, json={"action": "reject"}, headers=provider_headers("p1"))

        assert response.status_code == 409
        assert response.get_json()["error"] == "ProviderNotContacted"

    def test_idempotency_key_replays_first_result(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)
        url = f"/requests/{created['request_id']}/responses"
        headers = provider_headers("p1") | {"Idempotency-Key": "resp-1"}

        first = client.post(url, json={"action": "accept"}, headers=headers)
        second = client.post(url, json={"action": "accept"}, headers=headers)

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.get_json()["assigned_provider_id"] == "p1"
        assert second.get_json()["version"] == first.get_json()["version"]

    def test_builder_cannot_answer_for_provider(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/responses",
            json={"provider_id": "p1", "action": "accept"},
            headers=BUILDER,
        )

        assert response.status_code == 403
        assert rotation.get_request(created["request_id"]).status.value == "pending"

    def test_body_provider_must_match_caller(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/responses",
            json={"provider_id": "p1", "action": "reject"},
            headers=provider_headers("p2"),
        )

        assert response.status_code == 403
        assert contacted(rotation.get_request(created["request_id"]).model_dump(mode="json")) == "p1"

    def test_unknown_action(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        register_nearby_providers(rotation, 1)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/responses",
            json={"action": "maybe"},
            headers=provider_headers("p1"),
        )

        assert response.status_code == 400


class TestTimeouts:
    def test_premature_timeout_conflicts(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/timeouts",
            json={"provider_id": "p1"},
            headers=ADMIN,
        )

        assert response.status_code == 409

    def test_timeout_after_deadline_rotates(
        self, client: FlaskClient, rotation: DeliveryRotation, test_time: TestTimeProvider
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)
        test_time.advance_minutes(16)

        response = client.post(
            f"/requests/{created['request_id']}/timeouts",
            json={"provider_id": "p1"},
            headers=ADMIN,
        )

        assert response.status_code == 200
        assert contacted(response.get_json()) == "p2"

    def test_repeated_timeout_conflicts(
        self, client: FlaskClient, rotation: DeliveryRotation, test_time: TestTimeProvider
    ) -> None:
        register_nearby_providers(rotation, 3)
        created = create(client)
        test_time.advance_minutes(16)
        url = f"/requests/{created['request_id']}/timeouts"

        first = client.post(url, json={"provider_id": "p1"}, headers=ADMIN)
        second = client.post(url, json={"provider_id": "p1"}, headers=ADMIN)

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.get_json()["error"] == "ProviderNotContacted"

    def test_only_scheduler_identity_reports_timeouts(
        self, client: FlaskClient, rotation: DeliveryRotation, test_time: TestTimeProvider
    ) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client)
        test_time.advance_minutes(16)
        url = f"/requests/{created['request_id']}/timeouts"

        assert client.post(url, json={"provider_id": "p1"}).status_code == 400
        assert client.post(url, json={"provider_id": "p1"}, headers=BUILDER).status_code == 403
        assert (
            client.post(url, json={"provider_id": "p1"}, headers=provider_headers("p2")).status_code
            == 403
        )
        assert contacted(client.get(f"/requests/{created['request_id']}").get_json()["request"]) == "p1"


class TestLifecycle:
    def test_cancel(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        register_nearby_providers(rotation, 1)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/cancel",
            json={"reason": "Supplier closed"},
            headers=BUILDER,
        )

        assert response.status_code == 200
        assert response.get_json()["status"] == "cancelled"

    def test_cancel_by_stranger_is_forbidden(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 1)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/cancel",
            headers={"X-Actor-Id": "bld_other", "X-Actor-Role": "builder"},
        )

        assert response.status_code == 403

    def test_manual_advance(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        register_nearby_providers(rotation, 2)
        created = create(client, auto_rotation_enabled=False)
        request_id = created["request_id"]
        client.post(
            f"/requests/{request_id}/responses",
            json={"action": "reject"},
            headers=provider_headers("p1"),
        )

        response = client.post(f"/requests/{request_id}/advance", headers=BUILDER)

        assert response.status_code == 200
        assert contacted(response.get_json()) == "p2"

    def test_communications(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        register_nearby_providers(rotation, 1)
        created = create(client)

        response = client.get(f"/requests/{created['request_id']}/communications")

        assert response.status_code == 200
        records = response.get_json()
        assert records[0]["message_type"] == "delivery_request_notification"
        assert records[0]["recipient_id"] == "p1"


class TestDriverContact:
    def test_refusal_is_a_normal_answer(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 1)
        created = create(client)

        response = client.post(
            f"/requests/{created['request_id']}/driver-contact",
            json={"justification": "Gate pass"},
            headers=BUILDER,
        )

        assert response.status_code == 200
        body = response.get_json()
        assert body["allowed"] is False
        assert "+2547" not in body["driver_contact"]
        assert body["access_log_entry_id"]

    def test_disclosed_during_delivery(
        self, client: FlaskClient, rotation: DeliveryRotation
    ) -> None:
        register_nearby_providers(rotation, 1)
        created = create(client)
        request_id = created["request_id"]
        client.post(
            f"/requests/{request_id}/responses",
            json={"action": "accept"},
            headers=provider_headers("p1"),
        )
        phase = client.post(
            f"/requests/{request_id}/phase",
            json={"phase": "in_progress"},
            headers=provider_headers("p1"),
        )
        assert phase.status_code == 200

        response = client.post(
            f"/requests/{request_id}/driver-contact",
            json={"justification": "Gate pass"},
            headers=BUILDER,
        )

        body = response.get_json()
        assert body["allowed"] is True
        assert body["driver_contact"] == "+254700000001"


class TestProviders:
    def test_register_hides_phone(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        response = client.post(
            "/providers",
            json={
                "provider_id": "p_new",
                "provider_name": "Wanjiku Haulage",
                "phone": "+254711000000",
                "latitude": -1.28,
                "longitude": 36.82,
                "rating": 4.5,
            },
            headers=ADMIN,
        )

        assert response.status_code == 201
        assert response.get_json()["phone"] is None
        assert rotation.get_provider("p_new").phone == "+254711000000"

    def test_register_requires_admin(self, client: FlaskClient) -> None:
        response = client.post(
            "/providers", json={"provider_name": "Self Registered"}, headers=BUILDER
        )

        assert response.status_code == 403


class TestHealth:
    def test_liveness(self, client: FlaskClient) -> None:
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.get_json()["status"] == "alive"

    def test_readiness(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        register_nearby_providers(rotation, 1)

        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.get_json()["event_count"] == 1

    def test_not_ready_before_initialization(
        self, client: FlaskClient, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setattr(api, "_rotation", None)

        assert client.get("/health/ready").status_code == 503
        assert client.get("/health").status_code == 503

    def test_detailed_health(self, client: FlaskClient, rotation: DeliveryRotation) -> None:
        register_nearby_providers(rotation, 2)

        response = client.get("/health")

        assert response.status_code == 200
        body = response.get_json()
        assert body["status"] == "healthy"
        assert body["database"]["providers"] == 2
