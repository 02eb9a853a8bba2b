"""
Tests for app wiring: health check, error envelope, push endpoints.
"""

from errors import InsufficientFundsError, NotFoundError, RewardsError


class TestErrorEnvelope:
    """Tests for the JSON error envelope."""

    def test_to_dict_carries_extra(self):
        err = InsufficientFundsError("Insufficient coins", required=500)
        assert err.status_code == 400
        assert err.to_dict() == {
            "success": False,
            "code": "insufficient_funds",
            "message": "Insufficient coins",
            "required": 500,
        }

    def test_hierarchy(self):
        assert issubclass(NotFoundError, RewardsError)
        assert NotFoundError.status_code == 404

    def test_unknown_route(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.get_json() == {"success": False, "code": "not_found", "message": "Route not found"}

    def test_unexpected_exception_is_500(self, client, monkeypatch):
        def _boom(uid):
            raise RuntimeError("kaboom")

        monkeypatch.setattr("users.get_user", _boom)
        resp = client.get("/api/users/alice")
        assert resp.status_code == 500
        assert resp.get_json()["code"] == "internal"

    def test_production_hides_details(self, client, monkeypatch):
        def _boom(uid):
            raise RuntimeError("kaboom")

        monkeypatch.setattr("users.get_user", _boom)
        monkeypatch.setenv("FLASK_ENV", "production")
        resp = client.get("/api/users/alice")
        assert resp.get_json()["message"] == "Something went wrong!"


class TestHealth:
    def test_healthy(self, client):
        resp = client.get("/api/health")
        assert resp.status_code == 200
        assert resp.get_json()["status"] == "healthy"
        assert resp.headers["X-Robots-Tag"] == "noindex, nofollow"


class TestPushEndpoints:
    """Tests for the Web Push subscription endpoints."""

    def test_public_key_missing(self, client):
        assert client.get("/api/push/public-key").status_code == 500

    def test_subscribe_and_unsubscribe(self, client, make_user):
        from models_push import PushSubscription

        make_user("alice")
        sub = {"uid": "alice", "endpoint": "https://push.example.com/1", "keys": {"p256dh": "k", "auth": "a"}}

        assert client.post("/api/push/subscribe", json=sub).get_json() == {"ok": True}
        assert client.post("/api/push/subscribe", json=sub).get_json() == {"ok": True}
        assert PushSubscription.query.count() == 1

        client.post("/api/push/unsubscribe", json={"endpoint": sub["endpoint"]})
        assert PushSubscription.query.one().is_active is False

    def test_subscribe_invalid(self, client, make_user):
        make_user("alice")
        assert client.post("/api/push/subscribe", json={"uid": "alice"}).status_code == 400
        bad_user = {"uid": "ghost", "endpoint": "https://p/1", "keys": {"p256dh": "k", "auth": "a"}}
        assert client.post("/api/push/subscribe", json=bad_user).status_code == 404
