"""Click attribution records.

Lifecycle: pending -> clicked -> installed/completed, or rejected.
At most one click per (user, offer) may be open (pending/clicked); the
partial unique index enforces that in the database so two racing create
requests cannot both insert.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import relationship

from extensions import db


CLICK_STATUS_PENDING = "pending"
CLICK_STATUS_CLICKED = "clicked"
CLICK_STATUS_INSTALLED = "installed"
CLICK_STATUS_COMPLETED = "completed"
CLICK_STATUS_REJECTED = "rejected"

CLICK_STATUSES = (
    CLICK_STATUS_PENDING,
    CLICK_STATUS_CLICKED,
    CLICK_STATUS_INSTALLED,
    CLICK_STATUS_COMPLETED,
    CLICK_STATUS_REJECTED,
)
OPEN_CLICK_STATUSES = (CLICK_STATUS_PENDING, CLICK_STATUS_CLICKED)
COMPLETION_STATUSES = (CLICK_STATUS_INSTALLED, CLICK_STATUS_COMPLETED)

_OPEN_PREDICATE = text("status IN ('pending', 'clicked')")


class Click(db.Model):
    __tablename__ = "clicks"

    id = Column(Integer, primary_key=True)
    tracking_id = Column(String(64), unique=True, nullable=False)
    user_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, index=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=False, index=True)
    payout_destination = Column(String(255), nullable=False)
    reward_coins = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=CLICK_STATUS_PENDING)
    reward_paid = Column(Boolean, nullable=False, default=False)
    rewarded_at = Column(DateTime, nullable=True)
    ip_address = Column(String(45), nullable=True)
    device_info = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    offer = relationship("Offer")

    __table_args__ = (
        Index(
            "uq_clicks_open_user_offer",
            "user_uid",
            "offer_id",
            unique=True,
            sqlite_where=_OPEN_PREDICATE,
            postgresql_where=_OPEN_PREDICATE,
        ),
        Index("idx_clicks_status", "status"),
        Index("idx_clicks_created_at", "created_at"),
    )

    def to_dict(self, include_offer: bool = False):
        out = {
            "tracking_id": self.tracking_id,
            "user_uid": self.user_uid,
            "offer_id": self.offer_id,
            "payout_destination": self.payout_destination,
            "reward_coins": self.reward_coins,
            "status": self.status,
            "reward_paid": bool(self.reward_paid),
            "rewarded_at": self.rewarded_at.isoformat() if self.rewarded_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_offer and self.offer is not None:
            out["offer"] = {
                "id": self.offer.id,
                "title": self.offer.title,
                "coins": self.offer.coins,
                "tracking_url": self.offer.tracking_url,
            }
        return out
