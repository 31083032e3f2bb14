"""
Tests for push subscription endpoints
"""
from followup.infrastructure.db.models import PushSubscription

SUBSCRIPTION = {
    "endpoint": "https://push.example.com/sub/abc",
    "keys": {"p256dh": "key-p256dh", "auth": "key-auth"},
}


def test_public_key(client):
    response = client.get("/api/push/public-key")
    assert response.status_code == 200
    assert "public_key" in response.json()


def test_subscribe_and_resubscribe(authenticated_client, db_session, api_user):
    authenticated_client.post("/api/push/subscribe", json=SUBSCRIPTION)
    renewed = dict(SUBSCRIPTION, keys={"p256dh": "new-key", "auth": "new-auth"})
    authenticated_client.post("/api/push/subscribe", json=renewed)

    rows = db_session.query(PushSubscription).filter_by(user_id=api_user.id).all()
    assert len(rows) == 1
    assert rows[0].p256dh == "new-key"


def test_unsubscribe(authenticated_client, db_session):
    authenticated_client.post("/api/push/subscribe", json=SUBSCRIPTION)

    response = authenticated_client.request("DELETE", "/api/push/unsubscribe", json=SUBSCRIPTION)

    assert response.json() == {"success": True, "deleted": 1}
    assert db_session.query(PushSubscription).count() == 0


def test_test_push_without_vapid_keys(authenticated_client):
    data = authenticated_client.post("/api/push/test").json()
    assert data == {"success": False, "error": "push not configured"}


def test_health(client):
    assert client.get("/health").text == "ok"
