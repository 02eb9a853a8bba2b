"""Check-in reset worker for Render.

Run this as a Render 'worker' service:
  python checkin_worker.py

Clears every user's ``last_check_in`` once per local day (CHECKIN_TIMEZONE),
right after local midnight. The check-in endpoint already compares against
the local day start, so the reset only keeps the stored marker tidy for
clients that read it.

Environment:
- DATABASE_URL (already configured in Render)
- CHECKIN_TIMEZONE
- CHECKIN_WORKER_INTERVAL_SECONDS
"""

from datetime import datetime, timezone
import os
import time

from app import app
from checkins import checkin_tz, reset_check_ins

INTERVAL = int(os.getenv("CHECKIN_WORKER_INTERVAL_SECONDS", "60"))


def _local_today():
    return datetime.now(timezone.utc).astimezone(checkin_tz()).date()


def run_once(last_reset_day):
    """Reset if the local day has changed; returns the day the last reset covers."""
    today = _local_today()
    if last_reset_day == today:
        return last_reset_day
    cleared = reset_check_ins()
    app.logger.info("Check-in reset for %s: %s users cleared", today.isoformat(), cleared)
    return today


def main():
    app.logger.info("Check-in worker started (interval %ss)", INTERVAL)
    # Start from today so a restart mid-day does not reopen today's check-ins.
    last_reset_day = _local_today()
    while True:
        with app.app_context():
            try:
                last_reset_day = run_once(last_reset_day)
            except Exception:
                app.logger.exception("Check-in worker error")
        time.sleep(INTERVAL)


if __name__ == "__main__":
    main()
