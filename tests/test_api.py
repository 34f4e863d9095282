import pytest
from fastapi.testclient import TestClient

from mail_gateway.api import ROUTE_CLASSES, create_app
from mail_gateway.auth import fingerprint
from mail_gateway.config import GatewaySettings
from mail_gateway.errors import ProviderSendError
from mail_gateway.gateway import Gateway
from mail_gateway.models import EndpointClass, Provider
from mail_gateway.providers import EmailProvider, ProviderDispatcher

SECRET = "test-secret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


class ScriptedProvider(EmailProvider):
    """Accepts every message except those whose subject is 'fail'."""

    name = Provider.SENDGRID

    def __init__(self):
        super().__init__()
        self.sent = []

    def build_payload(self, message):
        return message.model_dump()

    async def deliver(self, message):
        if message.subject == "fail":
            raise ProviderSendError("SendGrid returned 400: bad request")
        self.sent.append(message)
        return f"sg-{len(self.sent)}"


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def gateway(tmp_path, provider):
    settings = GatewaySettings(api_secret=SECRET, db_path=str(tmp_path / "api.db"))
    dispatcher = ProviderDispatcher(
        {Provider.SENDGRID: provider},
        unconfigured={Provider.GMAIL: "Gmail service not configured. Set GMAIL_CLIENT_EMAIL and GMAIL_PRIVATE_KEY"},
    )
    return Gateway(settings, dispatcher=dispatcher)


@pytest.fixture
def client(gateway):
    with TestClient(create_app(gateway)) as test_client:
        yield test_client


def flush(client, gateway):
    client.portal.call(gateway.request_logger.flush)


def send_body(**message):
    data = {"to": "alice@example.com", "subject": "Hello", "text": "Hi"}
    data.update(message)
    return {"provider": "sendgrid", "message": data}


def test_every_protected_route_has_a_class(client):
    guarded = {
        (method, route.path)
        for route in client.app.routes
        for method in getattr(route, "methods", ())
        if route.path not in ("/health", "/openapi.json", "/docs", "/docs/oauth2-redirect", "/redoc")
        and method != "HEAD"
    }
    assert guarded == set(ROUTE_CLASSES)
    assert ROUTE_CLASSES[("POST", "/email/batch")] is EndpointClass.BATCH


def test_health_requires_no_auth(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["services"] == {"gmail": {"configured": False}, "sendgrid": {"configured": True}}
    assert "X-RateLimit-Limit" not in response.headers


def test_missing_and_invalid_credentials(client, gateway):
    response = client.post("/email/send", json=send_body())
    assert response.status_code == 401
    assert response.json() == {
        "statusCode": 401,
        "statusMessage": "Unauthorized",
        "message": "Missing Authorization header",
        "data": {"message": "Missing Authorization header"},
    }

    response = client.post("/email/send", json=send_body(), headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401
    assert response.json()["message"] == "Invalid API key"

    flush(client, gateway)
    row = client.portal.call(gateway.store.get_api_key_usage, fingerprint("wrong"))
    assert row["total_count"] == 1
    assert row["failure_count"] == 1


def test_send_success(client, provider):
    response = client.post("/email/send", json=send_body(to=["alice@example.com", "bob@example.com"]), headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["provider"] == "sendgrid"
    assert body["messageId"] == "sg-1"
    assert response.headers["X-RateLimit-Limit"] == "5"
    assert response.headers["X-RateLimit-Remaining"] == "4"
    assert provider.sent[0].to == ["alice@example.com", "bob@example.com"]


def test_send_validation_messages(client):
    cases = [
        ({}, "Provider is required (gmail or sendgrid)"),
        ({"provider": "sendgrid"}, "Message object is required"),
        (send_body(to=None), 'Message must include "to" and "subject" fields'),
        (send_body(subject=""), 'Message must include "to" and "subject" fields'),
        (send_body() | {"provider": "mailgun"}, "Invalid provider: mailgun. Must be 'gmail' or 'sendgrid'"),
    ]
    for body, message in cases:
        response = client.post("/email/send", json=body, headers=AUTH)
        assert response.status_code == 400, body
        assert response.json()["message"] == message


def test_malformed_recipients_are_rejected(client):
    response = client.post("/email/send", json=send_body(to=5), headers=AUTH)
    assert response.status_code == 400
    assert response.json()["statusMessage"] == "Bad Request"
    assert "must be an address" in response.json()["message"]


def test_unconfigured_provider(client):
    response = client.post("/email/send", json=send_body() | {"provider": "gmail"}, headers=AUTH)
    assert response.status_code == 500
    assert response.json()["message"].startswith("Gmail service not configured")


def test_provider_failure_answers_500_with_result(client):
    response = client.post("/email/send", json=send_body(subject="fail"), headers=AUTH)
    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "SendGrid returned 400: bad request"


def test_sixth_send_is_rate_limited(client):
    for expected in (4, 3, 2, 1, 0):
        response = client.post("/email/send", json=send_body(), headers=AUTH)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == str(expected)

    response = client.post("/email/send", json=send_body(), headers=AUTH)
    assert response.status_code == 429
    assert response.headers["X-RateLimit-Remaining"] == "0"
    assert int(response.headers["Retry-After"]) >= 1
    body = response.json()
    assert body["message"] == "Rate limit exceeded"
    assert body["data"]["remaining"] == 0
    assert body["data"]["retryAfter"] == int(response.headers["Retry-After"])

    # other classes keep their own quota
    assert client.get("/stats", headers=AUTH).status_code == 200


def test_batch_reports_partial_failure(client):
    messages = [
        {"to": "a@example.com", "subject": "one"},
        {"to": "b@example.com", "subject": "fail"},
        {"to": "c@example.com"},
        {"to": ["d@example.com"], "subject": "four"},
    ]
    response = client.post("/email/batch", json={"provider": "sendgrid", "messages": messages}, headers=AUTH)

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "3"
    body = response.json()
    assert (body["total"], body["successful"], body["failed"]) == (4, 2, 2)
    assert [r["success"] for r in body["results"]] == [True, False, False, True]
    assert body["results"][2]["error"] == 'Message must include "to" and "subject" fields'


def test_batch_validation(client):
    response = client.post("/email/batch", json={"messages": []}, headers=AUTH)
    assert response.json()["message"] == "Provider is required"

    response = client.post("/email/batch", json={"provider": "sendgrid", "messages": []}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["message"] == "Messages array is required and must not be empty"


def test_logs_and_stats(client, gateway):
    client.post("/email/send", json=send_body(), headers=AUTH)
    client.post("/email/send", json=send_body(subject="fail"), headers=AUTH)
    client.post("/email/send", json={}, headers=AUTH)
    flush(client, gateway)

    response = client.get("/logs", params={"limit": 2}, headers=AUTH)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["pagination"] == {"limit": 2, "offset": 0, "total": 3, "hasMore": True}
    newest = body["data"][0]
    assert newest["statusCode"] == 400
    assert newest["errorMessage"] == "Provider is required (gmail or sendgrid)"
    assert newest["clientIp"] == "testclient"

    response = client.get("/logs", params={"statusCode": 500}, headers=AUTH)
    rows = response.json()["data"]
    assert len(rows) == 1
    assert rows[0]["provider"] == "sendgrid"

    flush(client, gateway)
    response = client.get("/stats", headers=AUTH)
    data = response.json()["data"]
    assert data["totalRequests"] == 5
    assert data["successfulRequests"] == 3
    assert data["failedRequests"] == 2
    assert data["period"] == {"start": None, "end": None}


def test_health_is_not_logged(client, gateway):
    client.get("/health")
    flush(client, gateway)
    assert client.portal.call(gateway.store.count_request_logs) == 0


def test_logs_page_is_capped(client):
    response = client.get("/logs", params={"limit": 10_000}, headers=AUTH)
    assert response.json()["pagination"]["limit"] == 500

    response = client.get("/logs", params={"limit": "many"}, headers=AUTH)
    assert response.status_code == 400


def test_api_key_stats(client, gateway):
    client.get("/stats", headers=AUTH)
    flush(client, gateway)

    response = client.get("/api-key-stats", params={"apiKey": SECRET}, headers=AUTH)
    data = response.json()["data"]
    assert data["apiKey"] == fingerprint(SECRET)
    assert data["totalCount"] >= 1

    response = client.get("/api-key-stats", params={"apiKey": "unknown"}, headers=AUTH)
    assert response.json()["data"] == {"message": "No stats found for this API key"}

    response = client.get("/api-key-stats", headers=AUTH)
    body = response.json()
    assert body["total"] == len(body["data"]) == 1


def test_maintenance_actions(client):
    for _ in range(5):
        client.post("/email/send", json=send_body(), headers=AUTH)
    assert client.post("/email/send", json=send_body(), headers=AUTH).status_code == 429

    response = client.post(
        "/admin/maintenance", json={"action": "reset-rate-limit", "clientIp": "testclient"}, headers=AUTH
    )
    assert response.status_code == 200
    assert response.json()["data"]["message"] == "Rate limit reset for IP: testclient"
    assert client.post("/email/send", json=send_body(), headers=AUTH).status_code == 200

    response = client.post("/admin/maintenance", json={"action": "cleanup-logs", "daysOld": 0}, headers=AUTH)
    data = response.json()["data"]
    assert data["action"] == "cleanup-logs"
    assert data["message"] == "Deleted 0 logs older than 30 days"


def test_maintenance_validation(client):
    response = client.post("/admin/maintenance", json={}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["message"] == "action is required"

    response = client.post("/admin/maintenance", json={"action": "reset-rate-limit"}, headers=AUTH)
    assert response.json()["message"] == "clientIp is required for reset-rate-limit action"

    response = client.post("/admin/maintenance", json={"action": "reboot"}, headers=AUTH)
    assert response.status_code == 400
    assert response.json()["message"] == "Invalid action"


def test_metrics_endpoint(client):
    client.post("/email/send", json=send_body(), headers=AUTH)

    response = client.get("/metrics", headers=AUTH)
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'mgw_sent_total{provider="sendgrid"} 1.0' in response.text

    assert client.get("/metrics").status_code == 401


def test_gateway_requires_a_secret(tmp_path):
    with pytest.raises(ValueError):
        Gateway(GatewaySettings(db_path=str(tmp_path / "x.db")), dispatcher=ProviderDispatcher())
