from __future__ import annotations
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import Integer, String, Text, DateTime, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from extensions import db


utcnow = lambda: datetime.now(timezone.utc)


class BillingStatus(str):
    UNBILLED = "unbilled"
    BILLED = "billed" # terminal; set only by usage settlement


class CallStatus(str):
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CUSTOMER_BUSY = "customer-busy"


class Agent(db.Model):
    """Vapi assistant owned by a user. Managed elsewhere; read here for ownership and naming."""
    __tablename__ = "agents"
    id: Mapped[str] = mapped_column(String(64), primary_key=True) # Vapi assistant id
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Call(db.Model):
    __tablename__ = "calls"
    id: Mapped[str] = mapped_column(String(64), primary_key=True) # Vapi call id, stored verbatim
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    contact_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    agent_id: Mapped[str] = mapped_column(String(64), ForeignKey("agents.id"), nullable=False)
    call_name: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=CallStatus.IN_PROGRESS)
    end_reason: Mapped[Optional[str]] = mapped_column(String(128))
    duration: Mapped[Optional[int]] = mapped_column(Integer) # seconds
    cost: Mapped[Optional[int]] = mapped_column(Integer) # cents
    transcript: Mapped[Optional[str]] = mapped_column(Text)
    recording_url: Mapped[Optional[str]] = mapped_column(String(1024))

    billing_status: Mapped[str] = mapped_column(String(16), nullable=False, default=BillingStatus.UNBILLED)
    invoice_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    # set while a settlement run owns the row (between snapshot and Stripe); cleared on failure
    settlement_claim: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="calls")
    agent = relationship("Agent")

    __table_args__ = (
        db.Index("ix_calls_user_billing", "user_id", "billing_status"),
        db.Index("ix_calls_user_created", "user_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "contact_id": self.contact_id,
            "agent_id": self.agent_id,
            "call_name": self.call_name,
            "status": self.status,
            "end_reason": self.end_reason,
            "duration": self.duration,
            "cost": self.cost,
            "transcript": self.transcript,
            "recording_url": self.recording_url,
            "billing_status": self.billing_status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
