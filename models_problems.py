"""Support tickets a user files about payouts, offers or the app."""

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text

from extensions import db


PROBLEM_TYPES = ("technical", "payment", "offer", "other")

PROBLEM_STATUS_OPEN = "open"
PROBLEM_STATUS_IN_PROGRESS = "in_progress"
PROBLEM_STATUS_RESOLVED = "resolved"
PROBLEM_STATUS_CLOSED = "closed"
PROBLEM_STATUSES = (
    PROBLEM_STATUS_OPEN,
    PROBLEM_STATUS_IN_PROGRESS,
    PROBLEM_STATUS_RESOLVED,
    PROBLEM_STATUS_CLOSED,
)
# Entering one of these stamps resolved_at.
FINAL_PROBLEM_STATUSES = (PROBLEM_STATUS_RESOLVED, PROBLEM_STATUS_CLOSED)


def _iso(value):
    return value.isoformat() if value else None


class Problem(db.Model):
    __tablename__ = "problems"

    id = Column(Integer, primary_key=True)
    user_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, index=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=PROBLEM_STATUS_OPEN)
    admin_response = Column(Text, nullable=True)
    # List of attachment URLs.
    attachments = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_problems_user_created", "user_uid", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "status": self.status,
            "adminResponse": self.admin_response,
            "attachments": list(self.attachments or []),
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
            "resolvedAt": _iso(self.resolved_at),
        }
