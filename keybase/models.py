from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, ForeignKey, Numeric, JSON, UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base


ROLE_READER = "reader"
ROLE_SELLER = "seller"
ROLE_ADMIN = "admin"
ROLES = (ROLE_READER, ROLE_SELLER, ROLE_ADMIN)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("external_id", name="uq_users_external_id"),
        UniqueConstraint("display_name", name="uq_users_display_name"),
    )

    id = Column(Integer, primary_key=True, index=True)
    # Pi Network uid, the correlation key for every reconciliation
    external_id = Column(String(64), nullable=False, index=True)
    display_name = Column(String(64), nullable=True)
    role = Column(String(16), default=ROLE_READER, nullable=False)  # reader / seller / admin
    wallet_address = Column(String(128), nullable=True)
    auth_token = Column(Text, nullable=True)
    last_authenticated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    donations = relationship("Donation", back_populates="user")
    seller_application = relationship("SellerApplication", back_populates="user", uselist=False)


class Donation(Base):
    __tablename__ = "donations"
    __table_args__ = (
        UniqueConstraint("gateway_payment_id", "transaction_id", name="uq_donations_payment_tx"),
    )

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user = relationship("User", back_populates="donations")

    amount = Column(Numeric(18, 7), nullable=False)
    gateway_payment_id = Column(String(64), index=True, nullable=False)
    transaction_id = Column(String(128), nullable=False)
    status = Column(String(16), default="completed", nullable=False)  # pending / completed / failed / cancelled
    memo = Column(Text, nullable=True)
    payment_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class PaymentEvent(Base):
    """Append-only log of what the backend did with each Pi payment."""

    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, index=True)
    gateway_payment_id = Column(String(64), index=True, nullable=False)
    action = Column(String(32), nullable=False)  # approved / completed / already_completed / cancelled / failed
    transaction_id = Column(String(128), nullable=True)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)


class SellerApplication(Base):
    __tablename__ = "seller_applications"
    __table_args__ = (UniqueConstraint("user_id", name="uq_seller_applications_user"),)

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user = relationship("User", back_populates="seller_application")

    business_name = Column(String(255), nullable=False)
    business_type = Column(String(64), nullable=False)
    location = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(32), nullable=True)

    status = Column(String(16), default="pending", nullable=False)  # pending / approved / rejected
    notes = Column(Text, nullable=True)
    reviewed_by = Column(String(64), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
