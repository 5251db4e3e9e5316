from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, String, DateTime, ForeignKey
from extensions import db


utcnow = lambda: datetime.now(timezone.utc)


class InvoiceType(str):
    SUBSCRIPTION = "subscription"
    USAGE = "usage"


class InvoiceStatus(str):
    OPEN = "open"
    PAID = "paid"
    PAST_DUE = "past_due"


class Subscription(db.Model):
    """Mirror of a Stripe subscription; history rows accumulate per user."""
    __tablename__ = "billing_subscription"
    id: Mapped[str] = mapped_column(String(64), primary_key=True) # Stripe subscription id
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    status: Mapped[str] = mapped_column(String(32)) # active, past_due, canceled, incomplete, etc.
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True)) # Stripe event.created
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Invoice(db.Model):
    __tablename__ = "billing_invoice"
    id: Mapped[str] = mapped_column(String(64), primary_key=True) # Stripe invoice id
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    invoice_type: Mapped[str] = mapped_column(String(16), nullable=False) # InvoiceType
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0) # cents
    status: Mapped[str] = mapped_column(String(16), nullable=False) # InvoiceStatus
    hosted_invoice_url: Mapped[Optional[str]] = mapped_column(String(1024))
    last_event_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True)) # newest Stripe event.created applied
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "amount": self.amount,
            "status": self.status,
            "invoice_type": self.invoice_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "hosted_invoice_url": self.hosted_invoice_url,
        }


class ProcessedStripeEvent(db.Model):
    __tablename__ = "billing_processed_event"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), unique=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
