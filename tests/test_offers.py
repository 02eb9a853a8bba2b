"""
Tests for the offer catalog, per-user offer state and offer completion.

Tests cover:
1. Catalog reads and admin create/update validation
2. pending / rejected / completed state moves
3. Completion settlement is idempotent per (user, offer)
"""

import pytest

from errors import InvalidStateError
from extensions import db
from ledger import current_balance, ledger_total
from models_offers import UserOffer
from models_users import Transaction
from settlement import complete_offer


def _offer_payload(**overrides):
    payload = {
        "title": "Play Demo",
        "description": "Reach level 5",
        "coins": 300,
        "type": "install",
        "requirements": "Level 5",
        "trackingUrl": "https://t.example.com/?pcid={click_id}",
    }
    payload.update(overrides)
    return payload


class TestCatalog:
    """Tests for catalog reads and admin writes."""

    def test_list_only_active(self, client, make_offer):
        make_offer(title="On")
        make_offer(title="Off", is_active=False)
        make_offer(title="Video", type_="video")

        titles = [o["title"] for o in client.get("/api/offers").get_json()["offers"]]
        videos = [o["title"] for o in client.get("/api/offers/type/video").get_json()["offers"]]

        assert sorted(titles) == ["On", "Video"]
        assert videos == ["Video"]

    def test_get_offer_and_missing(self, client, make_offer):
        offer = make_offer()
        assert client.get(f"/api/offers/{offer.id}").get_json()["offer"]["id"] == offer.id
        assert client.get("/api/offers/9999").status_code == 404

    def test_unknown_type(self, client):
        assert client.get("/api/offers/type/banner").status_code == 400

    def test_create_and_update(self, client):
        resp = client.post("/api/offers", json=_offer_payload(offerCategory="prime", steps=["Install", "Play"]))
        offer = resp.get_json()["offer"]

        assert resp.status_code == 201
        assert offer["tracking_url"].endswith("{click_id}")
        assert offer["offer_category"] == "prime"
        assert offer["steps"] == ["Install", "Play"]

        resp = client.put(f"/api/offers/{offer['id']}", json={"coins": 400, "isActive": False})
        assert resp.status_code == 200
        assert resp.get_json()["offer"]["coins"] == 400
        assert resp.get_json()["offer"]["is_active"] is False

    @pytest.mark.parametrize("bad", [{"type": "banner"}, {"coins": 0}, {"coins": "ten"}, {"coins": 1.5}])
    def test_create_validation(self, client, bad):
        resp = client.post("/api/offers", json=_offer_payload(**bad))
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "invalid_input"

    def test_create_missing_fields(self, client):
        resp = client.post("/api/offers", json={"title": "Only a title"})
        assert resp.status_code == 400
        assert "coins" in resp.get_json()["fields"]

    def test_admin_key_enforced(self, client, monkeypatch):
        monkeypatch.setenv("ADMIN_API_KEY", "s3cret")
        assert client.post("/api/offers", json=_offer_payload()).status_code == 403
        ok = client.post("/api/offers", json=_offer_payload(), headers={"X-Admin-Key": "s3cret"})
        assert ok.status_code == 201


class TestOfferState:
    """Tests for pending / rejected / completed moves."""

    def test_pending_then_complete(self, client, make_user, make_offer):
        make_user("alice")
        offer = make_offer(coins=120)

        assert client.post(f"/api/offers/{offer.id}/pending/alice").status_code == 200
        assert client.post(f"/api/offers/{offer.id}/pending/alice").status_code == 400
        pending = client.get("/api/offers/pending/alice").get_json()["offers"]
        assert [o["id"] for o in pending] == [offer.id]

        resp = client.post(f"/api/offers/{offer.id}/complete/alice")
        db.session.expire_all()

        assert resp.status_code == 200
        assert resp.get_json()["coins"] == 120
        assert client.get("/api/offers/pending/alice").get_json()["total"] == 0
        assert client.get("/api/offers/completed/alice").get_json()["total"] == 1
        assert UserOffer.query.filter_by(user_uid="alice").count() == 1

    def test_reject_and_retry(self, client, make_user, make_offer):
        make_user("alice")
        offer = make_offer()

        resp = client.post(f"/api/offers/{offer.id}/reject/alice", json={"reason": "Screenshot missing"})
        assert resp.status_code == 200
        rejected = client.get("/api/offers/rejected/alice").get_json()["offers"]
        assert rejected[0]["note"] == "Screenshot missing"
        assert client.post(f"/api/offers/{offer.id}/reject/alice").status_code == 400

        assert client.post(f"/api/offers/{offer.id}/pending/alice").status_code == 200
        assert client.get("/api/offers/rejected/alice").get_json()["total"] == 0

    def test_completed_is_final(self, client, make_user, make_offer):
        make_user("alice")
        offer = make_offer()
        client.post(f"/api/offers/{offer.id}/complete/alice")

        assert client.post(f"/api/offers/{offer.id}/pending/alice").status_code == 400
        assert client.post(f"/api/offers/{offer.id}/reject/alice").status_code == 400

    def test_unknown_state(self, client, make_user):
        make_user("alice")
        assert client.get("/api/offers/archived/alice").status_code == 400


class TestCompleteOffer:
    """Tests for offer-completion settlement."""

    def test_credits_once(self, app, make_user, make_offer):
        make_user("alice")
        offer = make_offer(coins=75)

        out = complete_offer("alice", offer.id)
        with pytest.raises(InvalidStateError):
            complete_offer("alice", offer.id)
        db.session.expire_all()

        assert out["coins"] == 75
        assert out["transaction"]["amount"] == 75
        assert current_balance("alice") == 75
        assert ledger_total("alice") == 75
        assert Transaction.query.filter_by(user_uid="alice", offer_id=offer.id).count() == 1

    def test_inactive_offer(self, app, make_user, make_offer):
        make_user("alice")
        offer = make_offer(is_active=False)
        with pytest.raises(InvalidStateError):
            complete_offer("alice", offer.id)
