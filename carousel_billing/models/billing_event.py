from sqlalchemy import func, text
from carousel_billing.extensions import db

class BillingEvent(db.Model):
    """Append-only log of Stripe webhook deliveries, keyed by the Stripe event id."""

    __tablename__ = "billing_events"

    id = db.Column(db.Integer, primary_key=True)
    external_event_id = db.Column(db.String(255), nullable=False, unique=True, index=True)
    event_type = db.Column(db.String(80), nullable=False, index=True)
    signature_valid = db.Column(db.Boolean, nullable=False, server_default=text("true"))
    payload = db.Column(db.JSON, nullable=False, default=dict)
    processed = db.Column(db.Boolean, nullable=False, server_default=text("false"))
    retries = db.Column(db.Integer, nullable=False, server_default=text("0"))
    notes = db.Column(db.String(255), nullable=True)

    processed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<BillingEvent {self.external_event_id} type={self.event_type!r} processed={self.processed}>"
