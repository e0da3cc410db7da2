import json
from typing import Dict, Optional
from flask import current_app
from sqlalchemy.exc import SQLAlchemyError
from carousel_billing.extensions import db
from carousel_billing.models import Notification


class DatabaseNotificationSink:
    """
    Persists in-app notifications; delivery (bell, email) belongs to other services.
    Fire-and-forget: failures are logged, never raised to the caller.
    """

    def create_notification(
        self,
        user_id: int,
        type: str,
        titles: Dict[str, str],
        messages: Dict[str, str],
        action_url: Optional[str] = None,
        action_labels: Optional[Dict[str, str]] = None,
    ) -> bool:
        try:
            db.session.add(Notification(
                user_id=user_id,
                type=type,
                titles=titles,
                messages=messages,
                action_url=action_url,
                action_labels=action_labels,
            ))
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(
                "notification_create_failed",
                extra={"user_id": user_id, "type": type},
            )
            return False

        current_app.logger.info(json.dumps({
            "event": "notification_created",
            "user_id": user_id,
            "type": type,
        }))
        return True
