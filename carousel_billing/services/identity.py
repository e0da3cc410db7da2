from typing import Optional
from sqlalchemy.exc import SQLAlchemyError
from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.extensions import db, login_manager
from carousel_billing.models import User, UserRole
from carousel_billing.services import tokens


def get_current_user(token: str) -> Optional[User]:
    """Resolve a bearer token to an active user, or None."""
    user_id = tokens.verify(token)
    if user_id is None:
        return None
    user = db.session.get(User, user_id)
    if not user or not user.is_active:
        return None
    return user


class RoleDirectory:
    """Role lookups backed by the user_roles table."""

    def __init__(self, session):
        self._session = session

    def has_role(self, user_id: int, role: str) -> bool:
        try:
            found = (
                self._session.query(UserRole.id)
                .filter_by(user_id=user_id, role=role)
                .first()
            )
        except SQLAlchemyError as exc:
            raise EntitlementUnavailable("role lookup failed") from exc
        return found is not None

    def email_for(self, user_id: int) -> Optional[str]:
        try:
            user = self._session.get(User, user_id)
        except SQLAlchemyError as exc:
            raise EntitlementUnavailable("user lookup failed") from exc
        return user.email if user else None


@login_manager.request_loader
def load_user_from_request(request):
    auth = request.headers.get("Authorization") or ""
    if not auth.lower().startswith("bearer "):
        return None
    return get_current_user(auth[7:].strip())
