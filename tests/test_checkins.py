"""
Tests for the daily check-in and its reset job.
"""

from datetime import datetime, timedelta

import pytest

from checkin_worker import run_once
from checkins import CHECKIN_REWARD_COINS, check_in, local_day_start_utc, reset_check_ins
from errors import InvalidStateError
from extensions import db
from ledger import current_balance, ledger_total
from models_users import User


class TestDayBoundary:
    """Tests for the local-day computation (Asia/Kolkata, UTC+5:30)."""

    def test_after_local_midnight(self):
        # 2024-03-10 20:00 UTC is 2024-03-11 01:30 IST.
        assert local_day_start_utc(datetime(2024, 3, 10, 20, 0)) == datetime(2024, 3, 10, 18, 30)

    def test_before_local_midnight(self):
        # 2024-03-10 12:00 UTC is 2024-03-10 17:30 IST.
        assert local_day_start_utc(datetime(2024, 3, 10, 12, 0)) == datetime(2024, 3, 9, 18, 30)


class TestCheckIn:
    """Tests for POST /api/users/<uid>/check-in."""

    def test_once_per_day(self, client, make_user):
        make_user("alice")

        first = client.post("/api/users/alice/check-in")
        second = client.post("/api/users/alice/check-in")
        db.session.expire_all()

        assert first.status_code == 200
        assert first.get_json()["coins"] == CHECKIN_REWARD_COINS
        assert second.status_code == 400
        assert second.get_json()["message"] == "Already checked in today"
        assert current_balance("alice") == CHECKIN_REWARD_COINS
        assert ledger_total("alice") == CHECKIN_REWARD_COINS

    def test_yesterday_allows_again(self, app, make_user):
        user = make_user("alice")
        user.last_check_in = local_day_start_utc() - timedelta(minutes=1)
        db.session.commit()

        out = check_in("alice")
        assert out["coins"] == CHECKIN_REWARD_COINS

    def test_reset(self, app, make_user):
        make_user("alice")
        make_user("bob")
        check_in("alice")
        with pytest.raises(InvalidStateError):
            check_in("alice")

        assert reset_check_ins() == 1
        db.session.expire_all()
        assert User.query.filter(User.last_check_in.is_not(None)).count() == 0

    def test_worker_runs_once_per_day(self, app, make_user):
        make_user("alice")
        check_in("alice")

        day = run_once(None)
        assert run_once(day) == day
        db.session.expire_all()
        assert User.query.filter_by(uid="alice").one().last_check_in is None
