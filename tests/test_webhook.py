import time

import pytest
from fastapi.testclient import TestClient

from kioskfeed.broadcast import NEW_ANALYSIS_EVENT
from kioskfeed.config import Settings
from kioskfeed.main import create_app

from conftest import TOKEN

WEBHOOK = "/webhook/result"


@pytest.fixture
def feed(app):
    return app.state.feed


class TestAuthentication:
    def test_wrong_token_is_rejected_without_side_effects(
        self, client, feed, valid_payload, monkeypatch
    ):
        published = []
        monkeypatch.setattr(feed.broadcaster, "publish", published.append)

        response = client.post(
            WEBHOOK, json=valid_payload, headers={"Authorization": "Bearer nope"}
        )

        assert response.status_code == 401
        assert feed.store.size() == 0
        assert published == []

    def test_missing_token_is_rejected(self, client, feed, valid_payload):
        response = client.post(WEBHOOK, json=valid_payload)

        assert response.status_code == 401
        assert feed.store.size() == 0

    def test_query_token_is_accepted(self, client, valid_payload):
        response = client.post(f"{WEBHOOK}?token={TOKEN}", json=valid_payload)
        assert response.status_code == 200

    def test_bearer_header_wins_over_query_token(self, client, valid_payload):
        response = client.post(
            f"{WEBHOOK}?token={TOKEN}",
            json=valid_payload,
            headers={"Authorization": "Bearer wrong"},
        )
        assert response.status_code == 401

    def test_auth_runs_before_body_parsing(self, client):
        response = client.post(
            WEBHOOK, content=b"{broken", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 401


class TestIngestion:
    def test_valid_payload_is_stored(self, client, feed, auth_headers, valid_payload):
        response = client.post(WEBHOOK, json=valid_payload, headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["fallback"] is False
        assert feed.store.latest().id == body["analysisId"]

    def test_invalid_payload_degrades_to_fallback(self, client, auth_headers):
        response = client.post(
            WEBHOOK, json={"companyName": "Beta"}, headers=auth_headers
        )

        assert response.status_code == 200
        assert response.json()["fallback"] is True

        latest = client.get("/result/latest").json()
        assert latest["meta"]["source"] == "fallback"
        assert latest["companyName"] == "Beta"
        assert latest["vacancyTitle"]
        assert latest["idealCandidateImageUrl"]

    def test_form_encoded_body(self, client, auth_headers, valid_payload):
        form = {k: v for k, v in valid_payload.items() if k != "meta"}
        response = client.post(WEBHOOK, data=form, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["fallback"] is False

    def test_malformed_json_is_rejected(self, client, feed, auth_headers):
        response = client.post(
            WEBHOOK,
            content=b"{not json",
            headers={**auth_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert feed.store.size() == 0

    def test_empty_body_degrades_to_fallback(self, client, auth_headers):
        response = client.post(WEBHOOK, headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["fallback"] is True

    def test_legacy_route(self, client, auth_headers, valid_payload):
        response = client.post(
            "/api/webhook/v1/result", json=valid_payload, headers=auth_headers
        )
        assert response.status_code == 200

    def test_internal_error_stores_nothing(
        self, client, feed, auth_headers, valid_payload, monkeypatch
    ):
        def explode(body):
            raise RuntimeError("boom")

        monkeypatch.setattr(feed.normalizer, "normalize", explode)
        response = client.post(WEBHOOK, json=valid_payload, headers=auth_headers)

        assert response.status_code == 500
        assert response.json() == {
            "error": "Internal server error",
            "message": "Failed to process analysis result",
        }
        assert feed.store.size() == 0

    def test_rate_limit(self, valid_payload, auth_headers):
        app = create_app(Settings(webhook_auth_token=TOKEN, webhook_rate_limit="2/minute"))
        with TestClient(app) as client:
            codes = [
                client.post(WEBHOOK, json=valid_payload, headers=auth_headers).status_code
                for _ in range(3)
            ]
        assert codes == [200, 200, 429]


class TestReadEndpoints:
    def test_latest_is_404_when_empty(self, client):
        assert client.get("/result/latest").status_code == 404
        assert client.get("/api/last").status_code == 404

    def test_latest_returns_canonical_json(self, client, auth_headers, valid_payload):
        analysis_id = client.post(
            WEBHOOK, json=valid_payload, headers=auth_headers
        ).json()["analysisId"]

        latest = client.get("/result/latest").json()

        assert latest["id"] == analysis_id
        assert latest["companyName"] == "Acme &amp; Co"
        assert latest["score"] == 42
        assert latest["analysisParagraph"] == "<p>Solide basis.</p>"
        assert latest["meta"]["analysisId"] == "up-1"
        assert "tips" not in latest
        assert "timestamp" in latest

    def test_results_are_bounded_and_ordered(self, client, auth_headers, valid_payload):
        ids = [
            client.post(WEBHOOK, json=valid_payload, headers=auth_headers).json()["analysisId"]
            for _ in range(4)
        ]

        results = client.get("/results").json()

        # capacity is 3 in the test settings
        assert [r["id"] for r in results] == ids[1:]
        assert client.get("/result/latest").json()["id"] == ids[-1]

    def test_health_reports_occupancy(self, client, auth_headers, valid_payload):
        client.post(WEBHOOK, json=valid_payload, headers=auth_headers)
        health = client.get("/health").json()

        assert health["ok"] is True
        assert health["queue"] == 1
        assert health["capacity"] == 3
        assert client.get("/healthz").status_code == 200

    def test_kiosk_config(self, client):
        config = client.get("/api/config").json()

        assert config["displaySeconds"] == 15
        assert config["pollIntervalSeconds"] == 10
        assert "kioskTitle" in config


class TestPushChannel:
    def test_accepted_result_is_pushed(self, client, auth_headers, valid_payload):
        with client.websocket_connect("/ws") as ws:
            assert client.get("/health").json()["subscribers"] == 1

            analysis_id = client.post(
                WEBHOOK, json=valid_payload, headers=auth_headers
            ).json()["analysisId"]
            message = ws.receive_json()

        assert message["event"] == NEW_ANALYSIS_EVENT
        assert message["data"]["id"] == analysis_id
        assert message["data"] == client.get("/result/latest").json()

    def test_every_subscriber_receives_the_event(self, client, auth_headers, valid_payload):
        with client.websocket_connect("/ws") as first, client.websocket_connect("/ws") as second:
            client.post(WEBHOOK, json={}, headers=auth_headers)

            assert first.receive_json()["data"]["meta"]["source"] == "fallback"
            assert second.receive_json()["data"]["meta"]["source"] == "fallback"

    def test_disconnect_is_unregistered(self, client):
        with client.websocket_connect("/ws"):
            assert client.get("/health").json()["subscribers"] == 1

        # the server notices the close asynchronously
        for _ in range(100):
            if client.get("/health").json()["subscribers"] == 0:
                break
            time.sleep(0.01)
        assert client.get("/health").json()["subscribers"] == 0

    def test_binary_frame_keeps_subscription(self, client, auth_headers, valid_payload):
        with client.websocket_connect("/ws") as ws:
            ws.send_bytes(b"\x00")
            ws.send_text("hello")
            analysis_id = client.post(
                WEBHOOK, json=valid_payload, headers=auth_headers
            ).json()["analysisId"]

            assert ws.receive_json()["data"]["id"] == analysis_id
            assert client.get("/health").json()["subscribers"] == 1
