from sqlalchemy import func, text, CheckConstraint, Index
from carousel_billing.extensions import db

LIMIT_PERIODS = ("daily", "weekly", "monthly")
CURRENCIES = ("brl", "usd", "eur")

class Plan(db.Model):
    __tablename__ = "plans"

    id = db.Column(db.Integer, primary_key=True)
    tier = db.Column(db.String(32), nullable=False, index=True)
    name = db.Column(db.String(80), nullable=False)

    daily_limit = db.Column(db.Integer, nullable=False, server_default=text("1"))
    limit_period = db.Column(db.String(16), nullable=False, server_default=text("'daily'"))

    has_watermark = db.Column(db.Boolean, nullable=False, server_default=text("true"))
    has_editor = db.Column(db.Boolean, nullable=False, server_default=text("false"))
    has_history = db.Column(db.Boolean, nullable=False, server_default=text("false"))

    # {"brl": "price_...", "usd": "price_...", "eur": "price_..."}
    external_price_ids = db.Column(db.JSON, nullable=False, default=dict)

    is_active = db.Column(db.Boolean, nullable=False, server_default=text("true"))
    display_order = db.Column(db.Integer, nullable=False, server_default=text("0"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        CheckConstraint(
            "limit_period IN (" + ",".join(f"'{p}'" for p in LIMIT_PERIODS) + ")",
            name="ck_plans_limit_period_valid",
        ),
        # at most one active definition per tier
        Index(
            "uq_plans_active_tier",
            "tier",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Plan id={self.id} tier={self.tier!r} limit={self.daily_limit}/{self.limit_period}>"
