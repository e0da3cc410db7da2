from sqlalchemy import func, text
from carousel_billing.extensions import db

class Notification(db.Model):
    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type = db.Column(db.String(40), nullable=False, index=True)
    # {"pt": "...", "en": "..."}
    titles = db.Column(db.JSON, nullable=False, default=dict)
    messages = db.Column(db.JSON, nullable=False, default=dict)
    action_url = db.Column(db.String(255), nullable=True)
    action_labels = db.Column(db.JSON, nullable=True)
    is_read = db.Column(db.Boolean, nullable=False, server_default=text("false"))

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=func.now())

    def __repr__(self) -> str:
        return f"<Notification id={self.id} user_id={self.user_id} type={self.type!r}>"
