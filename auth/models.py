from datetime import datetime, timezone
from sqlalchemy.orm import validates
from extensions import db
from plans.catalog import SUBSCRIPTION_STATUSES

utcnow = lambda: datetime.now(timezone.utc)

class TimestampMixin:
    created_at = db.Column(
        db.DateTime(timezone=True),
        default=utcnow,
        nullable=False
    )
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False
    )


class User(TimestampMixin, db.Model):
    """
    Account plus the local projection of its Stripe subscription.

    `subscription_status` and `can_make_calls` are written only by the Stripe
    webhook reconciler and the subscribe flow; everything else reads them.
    """
    __tablename__ = 'users'

    id                  = db.Column(db.Integer, primary_key=True)
    email               = db.Column(db.String(255), unique=True, nullable=False, index=True)
    name                = db.Column(db.String(255), nullable=True)

    stripe_customer_id  = db.Column(db.String(64), unique=True, nullable=True, index=True)
    subscription_status = db.Column(db.String(32), nullable=False, default="incomplete")
    can_make_calls      = db.Column(db.Boolean, nullable=False, default=False)

    calls = db.relationship('Call', back_populates='user', lazy='dynamic')

    @validates('subscription_status')
    def _validate_status(self, key, value):
        if value not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unknown subscription status: {value}")
        return value

    def set_billing_state(self, status: str, can_make_calls: bool) -> None:
        self.subscription_status = status
        self.can_make_calls = bool(can_make_calls)

    def __repr__(self):
        return f"<User {self.id} {self.subscription_status}>"
