"""Database models for the newsletter subscriber store."""
from __future__ import annotations

import enum

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class SubscriberStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"

    @classmethod
    def parse(cls, value: str) -> "SubscriberStatus":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Invalid subscriber status: {value}") from None

    def __str__(self) -> str:
        return self.value


class SubscriberRecord(Base):
    __tablename__ = "subscribers"
    __table_args__ = (
        CheckConstraint("status IN ('pending', 'approved', 'declined')", name="ck_subscribers_status"),
        Index("idx_subscribers_status", "status"),
        Index("idx_subscribers_subscribed_at", "subscribed_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(320), unique=True, nullable=False, index=True)
    status = Column(String(16), nullable=False, default=SubscriberStatus.PENDING.value)
    subscribed_at = Column(DateTime(timezone=True), nullable=False)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    source_email_id = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
