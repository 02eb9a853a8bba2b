#!/usr/bin/env python3
"""Clear every user's daily check-in marker.

Intended to be run from a scheduler (e.g., Render Cron) just after local
midnight in CHECKIN_TIMEZONE (18:30 UTC for Asia/Kolkata).
"""

from app import app
from checkins import reset_check_ins


def main():
    with app.app_context():
        cleared = reset_check_ins()
        app.logger.info("Check-in reset: %s users cleared", cleared)

    print({"ok": True, "cleared": cleared})


if __name__ == "__main__":
    main()
