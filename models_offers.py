"""Offer catalog and per-user offer state.

One ``user_offers`` row per (user, offer). Its status is exactly one of
pending/completed/rejected, so an offer can never sit in two of those sets
for the same user.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from extensions import db


OFFER_TYPES = ("daily", "video", "install", "share", "prime")
OFFER_CATEGORIES = ("regular", "prime")

# Placeholder substituted with the tracking id in Offer.tracking_url.
CLICK_ID_PLACEHOLDER = "{click_id}"

OFFER_STATE_PENDING = "pending"
OFFER_STATE_COMPLETED = "completed"
OFFER_STATE_REJECTED = "rejected"
OFFER_STATES = (OFFER_STATE_PENDING, OFFER_STATE_COMPLETED, OFFER_STATE_REJECTED)


class Offer(db.Model):
    __tablename__ = "offers"

    id = Column(Integer, primary_key=True)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    coins = Column(Integer, nullable=False)  # reward per completion
    type = Column(String(20), nullable=False)
    requirements = Column(Text, nullable=False)
    image = Column(String(500), nullable=False, default="")
    developer = Column(String(200), nullable=False, default="")
    rating = Column(Float, nullable=False, default=4.0)
    downloads = Column(String(50), nullable=False, default="")
    category = Column(String(100), nullable=False, default="")
    app_link = Column(String(500), nullable=False, default="")
    tracking_url = Column(String(1000), nullable=False, default="")
    deadline = Column(String(50), nullable=False, default="7 days")
    steps = Column(JSON, nullable=False, default=list)
    offer_category = Column(String(20), nullable=False, default="regular")
    is_active = Column(Boolean, nullable=False, default=True)
    expiry_date = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_offers_active_type", "is_active", "type"),
    )

    def tracking_url_for(self, tracking_id: str) -> str:
        return (self.tracking_url or "").replace(CLICK_ID_PLACEHOLDER, tracking_id)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "coins": self.coins,
            "type": self.type,
            "requirements": self.requirements,
            "image": self.image,
            "developer": self.developer,
            "rating": self.rating,
            "downloads": self.downloads,
            "category": self.category,
            "app_link": self.app_link,
            "tracking_url": self.tracking_url,
            "deadline": self.deadline,
            "steps": self.steps or [],
            "offer_category": self.offer_category,
            "is_active": self.is_active,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class UserOffer(db.Model):
    __tablename__ = "user_offers"

    id = Column(Integer, primary_key=True)
    user_uid = Column(String(128), ForeignKey("users.uid", onupdate="CASCADE"), nullable=False, index=True)
    offer_id = Column(Integer, ForeignKey("offers.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=OFFER_STATE_PENDING)
    note = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_uid", "offer_id", name="uq_user_offers_user_offer"),
        Index("idx_user_offers_user_status", "user_uid", "status"),
    )
