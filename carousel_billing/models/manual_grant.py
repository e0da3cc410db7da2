from sqlalchemy import func, text
from carousel_billing.extensions import db

class ManualGrant(db.Model):
    """Administrator override (comps, trials, support remediation). Outranks the subscription mirror."""

    __tablename__ = "manual_grants"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    tier = db.Column(db.String(32), nullable=False)
    custom_daily_limit = db.Column(db.Integer, nullable=True)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, server_default=text("true"))

    granted_by = db.Column(db.String(320), nullable=False)
    reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<ManualGrant user_id={self.user_id} tier={self.tier!r} active={self.is_active}>"
