from .user import User, UserRole, ROLE_ADMIN
from .plan import Plan
from .subscription import Subscription
from .manual_grant import ManualGrant
from .usage_record import UsageRecord
from .billing_event import BillingEvent
from .notification import Notification

__all__ = [
    "User",
    "UserRole",
    "ROLE_ADMIN",
    "Plan",
    "Subscription",
    "ManualGrant",
    "UsageRecord",
    "BillingEvent",
    "Notification",
]
