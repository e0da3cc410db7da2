from sqlalchemy import func, text, UniqueConstraint
from carousel_billing.extensions import db

class UsageRecord(db.Model):
    __tablename__ = "usage_records"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    usage_date = db.Column(db.Date, nullable=False)
    units_consumed = db.Column(db.Integer, nullable=False, server_default=text("0"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("user_id", "usage_date", name="uq_usage_records_user_date"),
    )
