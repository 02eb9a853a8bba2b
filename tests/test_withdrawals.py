"""
Tests for the withdrawal lifecycle.

Tests cover:
1. Coin cost (ceiling of amount / rate)
2. Request: guards and the single-transaction debit
3. Verify: pending -> verified, ledger line completed
4. Listing and the admin dashboard API
"""

import pytest

from errors import InvalidInputError, NotFoundError
from extensions import db
from ledger import current_balance, ledger_total
from models_users import Notification, Transaction
from models_withdrawals import Withdrawal
from withdrawals import coins_for_amount, parse_amount, request_withdrawal, verify_withdrawal


class TestCoinCost:
    """Tests for the amount -> coins conversion."""

    def test_exact_amount(self):
        assert coins_for_amount(50, "0.1") == 500

    def test_rounds_up(self):
        """Fractional coin costs are rounded up, never down."""
        assert coins_for_amount(0.05, "0.1") == 1
        assert coins_for_amount(10.01, "0.1") == 101

    def test_no_float_drift(self):
        """1.1 / 0.1 is 11 coins, not 12."""
        assert coins_for_amount(1.1, "0.1") == 11

    @pytest.mark.parametrize("raw", [None, "", 0, -5, "abc", float("nan"), float("inf"), True])
    def test_invalid_amounts(self, raw):
        with pytest.raises(InvalidInputError):
            parse_amount(raw)


class TestRequestWithdrawal:
    """Tests for POST /api/users/<uid>/withdraw."""

    def test_fifty_rupees_costs_five_hundred_coins(self, client, make_user, upi):
        """At rate 0.1 a 50.00 withdrawal from 1000 coins leaves 500."""
        make_user("alice", coins=1000, payment_method=upi)

        resp = client.post("/api/users/alice/withdraw", json={"amount": 50})
        body = resp.get_json()
        db.session.expire_all()

        assert resp.status_code == 201
        assert body["deductedCoins"] == 500
        assert body["newBalance"] == 500
        assert body["withdrawal"]["status"] == "pending"
        assert body["withdrawal"]["payment_method"] == upi
        assert current_balance("alice") == 500
        assert ledger_total("alice") == 500

        tx = Transaction.query.filter_by(user_uid="alice", kind="withdraw").one()
        assert tx.delta == -500
        assert tx.status == "pending"
        assert tx.withdrawal_id == body["withdrawal"]["id"]
        assert Notification.query.filter_by(user_uid="alice", type="withdrawal").count() == 1

    def test_insufficient_funds_changes_nothing(self, client, make_user, upi):
        make_user("alice", coins=100, payment_method=upi)

        resp = client.post("/api/users/alice/withdraw", json={"amount": 50})
        db.session.expire_all()

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "insufficient_funds"
        assert resp.get_json()["required"] == 500
        assert current_balance("alice") == 100
        assert Withdrawal.query.count() == 0
        assert Transaction.query.filter_by(kind="withdraw").count() == 0

    def test_requires_payment_method(self, client, make_user):
        make_user("alice", coins=1000)

        resp = client.post("/api/users/alice/withdraw", json={"amount": 10})
        db.session.expire_all()

        assert resp.status_code == 400
        assert resp.get_json()["code"] == "precondition_failed"
        assert current_balance("alice") == 1000

    def test_invalid_amount(self, client, make_user, upi):
        make_user("alice", coins=1000, payment_method=upi)
        resp = client.post("/api/users/alice/withdraw", json={"amount": -1})
        assert resp.status_code == 400
        assert resp.get_json()["code"] == "invalid_input"

    def test_unknown_user(self, client):
        assert client.post("/api/users/ghost/withdraw", json={"amount": 10}).status_code == 404

    def test_snapshot_survives_payment_method_change(self, app, make_user, upi):
        """The withdrawal keeps the payment method it was requested with."""
        user = make_user("alice", coins=1000, payment_method=upi)
        out = request_withdrawal("alice", 10)

        user.payment_method = {"type": "upi", "upiId": "other@bank"}
        db.session.commit()

        assert db.session.get(Withdrawal, out["withdrawal"]["id"]).payment_method == upi

    def test_rate_change_does_not_touch_recorded_withdrawal(self, client, make_user, upi, monkeypatch):
        """A later COIN_EXCHANGE_RATE change leaves earlier withdrawals as recorded."""
        make_user("alice", coins=1000, payment_method=upi)
        wid = client.post("/api/users/alice/withdraw", json={"amount": 50}).get_json()["withdrawal"]["id"]

        monkeypatch.setenv("COIN_EXCHANGE_RATE", "0.5")
        db.session.expire_all()
        listing = client.get("/api/users/alice/withdrawals").get_json()

        w = db.session.get(Withdrawal, wid)
        assert w.coins == 500
        assert w.exchange_rate == "0.1"
        assert listing["all"][0]["coins"] == 500
        assert listing["all"][0]["exchange_rate"] == "0.1"
        assert current_balance("alice") == 500
        # New requests use the new rate.
        assert client.post("/api/users/alice/withdraw", json={"amount": 50}).get_json()["deductedCoins"] == 100


class TestVerifyWithdrawal:
    """Tests for PATCH /api/users/<uid>/withdrawals/<id>/verify."""

    def test_verify_flow(self, client, make_user, upi):
        make_user("alice", coins=1000, payment_method=upi)
        wid = client.post("/api/users/alice/withdraw", json={"amount": 50}).get_json()["withdrawal"]["id"]

        resp = client.patch(f"/api/users/alice/withdrawals/{wid}/verify", json={"adminId": "admin-1"})
        db.session.expire_all()

        assert resp.status_code == 200
        w = resp.get_json()["withdrawal"]
        assert w["status"] == "verified"
        assert w["verified_by"] == "admin-1"
        assert w["verified_date"] is not None
        assert Transaction.query.filter_by(withdrawal_id=wid).one().status == "completed"
        # Verification does not move coins again.
        assert current_balance("alice") == 500
        assert ledger_total("alice") == 500

        listing = client.get("/api/users/alice/withdrawals").get_json()
        assert [x["id"] for x in listing["verified"]] == [wid]
        assert listing["pending"] == []
        assert len(listing["all"]) == 1

    def test_verify_twice_is_not_found(self, app, make_user, upi):
        make_user("alice", coins=1000, payment_method=upi)
        wid = request_withdrawal("alice", 10)["withdrawal"]["id"]
        verify_withdrawal("alice", wid, "admin-1")

        with pytest.raises(NotFoundError):
            verify_withdrawal("alice", wid, "admin-1")

    def test_requires_admin_id(self, app, make_user, upi):
        make_user("alice", coins=1000, payment_method=upi)
        wid = request_withdrawal("alice", 10)["withdrawal"]["id"]

        with pytest.raises(InvalidInputError):
            verify_withdrawal("alice", wid, "")

    def test_other_users_withdrawal(self, app, make_user, upi):
        make_user("alice", coins=1000, payment_method=upi)
        make_user("bob")
        wid = request_withdrawal("alice", 10)["withdrawal"]["id"]

        with pytest.raises(NotFoundError):
            verify_withdrawal("bob", wid, "admin-1")

    def test_admin_key_enforced(self, client, make_user, upi, monkeypatch):
        make_user("alice", coins=1000, payment_method=upi)
        wid = client.post("/api/users/alice/withdraw", json={"amount": 10}).get_json()["withdrawal"]["id"]
        monkeypatch.setenv("ADMIN_API_KEY", "s3cret")

        denied = client.patch(f"/api/users/alice/withdrawals/{wid}/verify", json={"adminId": "a"})
        allowed = client.patch(
            f"/api/users/alice/withdrawals/{wid}/verify",
            json={"adminId": "a"},
            headers={"X-Admin-Key": "s3cret"},
        )

        assert denied.status_code == 403
        assert allowed.status_code == 200

    def test_admin_gate_closed_without_key_in_production(self, client, make_user, upi, monkeypatch):
        """Outside explicit development an unset ADMIN_API_KEY denies admin routes."""
        make_user("alice", coins=1000, payment_method=upi)
        wid = client.post("/api/users/alice/withdraw", json={"amount": 10}).get_json()["withdrawal"]["id"]

        monkeypatch.setenv("FLASK_ENV", "production")
        assert client.patch(f"/api/users/alice/withdrawals/{wid}/verify", json={"adminId": "a"}).status_code == 403
        assert client.get("/api/admin/withdrawals").status_code == 403

        monkeypatch.setenv("FLASK_ENV", "development")
        monkeypatch.setenv("RENDER", "true")
        assert client.patch(f"/api/users/alice/withdrawals/{wid}/verify", json={"adminId": "a"}).status_code == 403

        monkeypatch.delenv("RENDER")
        assert client.patch(f"/api/users/alice/withdrawals/{wid}/verify", json={"adminId": "a"}).status_code == 200


class TestAdminWithdrawals:
    """Tests for the admin dashboard API."""

    def test_filter_and_export(self, client, make_user, upi):
        make_user("alice", coins=1000, payment_method=upi)
        make_user("bob", coins=1000, payment_method=upi)
        client.post("/api/users/alice/withdraw", json={"amount": 10})
        wid = client.post("/api/users/bob/withdraw", json={"amount": 20}).get_json()["withdrawal"]["id"]
        client.patch(f"/api/users/bob/withdrawals/{wid}/verify", json={"adminId": "admin-1"})

        pending = client.get("/api/admin/withdrawals?status=pending").get_json()["withdrawals"]
        by_bob = client.get("/api/admin/withdrawals?uid=bob").get_json()["withdrawals"]
        csv = client.get("/api/admin/withdrawals/export.csv")

        assert [w["user_uid"] for w in pending] == ["alice"]
        assert [w["status"] for w in by_bob] == ["verified"]
        assert csv.mimetype == "text/csv"
        assert csv.get_data(as_text=True).count("\n") == 2
