from sqlalchemy import func, text, CheckConstraint
from carousel_billing.extensions import db

STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELLED = "cancelled"
STATUS_CHOICES = (STATUS_ACTIVE, STATUS_PAST_DUE, STATUS_CANCELLED)

class Subscription(db.Model):
    """Local mirror of a user's Stripe subscription. Written only by the webhook synchronizer."""

    __tablename__ = "subscriptions"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
        index=True,
    )

    tier = db.Column(db.String(32), nullable=False, server_default=text("'free'"))

    external_subscription_id = db.Column(db.String(64), nullable=True, unique=True, index=True)
    external_customer_id = db.Column(db.String(64), nullable=True, index=True)
    external_price_id = db.Column(db.String(64), nullable=True)

    status = db.Column(db.String(16), nullable=False, index=True, server_default=text("'active'"))
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=True)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=True, index=True)
    cancel_at_period_end = db.Column(db.Boolean, nullable=False, server_default=text("false"))
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    failed_payment_count = db.Column(db.Integer, nullable=False, server_default=text("0"))
    last_payment_failure_at = db.Column(db.DateTime(timezone=True), nullable=True)
    # tier the mirror falls to when the paid period ends; set while a cancel is pending
    scheduled_downgrade_tier = db.Column(db.String(32), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "status IN (" + ",".join(f"'{s}'" for s in STATUS_CHOICES) + ")",
            name="ck_subscriptions_status_valid",
        ),
    )

    def __repr__(self) -> str:
        return f"<Subscription id={self.id} user_id={self.user_id} tier={self.tier!r} status={self.status!r}>"
