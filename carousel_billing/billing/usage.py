"""
Usage accounting over the per-day usage ledger.

Periods are calendar windows ending today (inclusive):
  - daily:   today
  - weekly:  the most recent Monday (Sunday closes the ISO week)
  - monthly: the first of the current month
"""
from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from sqlalchemy import func, literal, select
from sqlalchemy.exc import SQLAlchemyError

from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.services.persistence import dialect_insert, upsert

PERIOD_DAILY = "daily"  # also the fallback for unknown periods
PERIOD_WEEKLY = "weekly"
PERIOD_MONTHLY = "monthly"


def local_today(tz_name: str = "UTC", now: Optional[datetime] = None) -> date:
    tz = ZoneInfo(tz_name or "UTC")
    if now is None:
        return datetime.now(tz).date()
    return now.astimezone(tz).date()


def period_start(period: str, today: date) -> date:
    if period == PERIOD_WEEKLY:
        # day numbering: Sunday=0 .. Saturday=6
        day_of_week = (today.weekday() + 1) % 7
        offset = -6 if day_of_week == 0 else 1 - day_of_week
        return today + timedelta(days=offset)
    if period == PERIOD_MONTHLY:
        return today.replace(day=1)
    return today


class UsageLedger:
    def __init__(self, session, tz_name: str = "UTC"):
        self._session = session
        self._tz_name = tz_name

    def today(self, now: Optional[datetime] = None) -> date:
        return local_today(self._tz_name, now)

    def usage_for_period(self, user_id: int, period: str, today: Optional[date] = None) -> int:
        from carousel_billing.models import UsageRecord
        today = today or self.today()
        start = period_start(period, today)
        try:
            total = (
                self._session.query(func.coalesce(func.sum(UsageRecord.units_consumed), 0))
                .filter(
                    UsageRecord.user_id == user_id,
                    UsageRecord.usage_date >= start,
                    UsageRecord.usage_date <= today,
                )
                .scalar()
            )
        except SQLAlchemyError as exc:
            raise EntitlementUnavailable("usage ledger unavailable") from exc
        return int(total or 0)

    def record_usage(self, user_id: int, units: int = 1, today: Optional[date] = None) -> None:
        """Atomically add `units` to the user's counter for today. Caller commits."""
        from carousel_billing.models import UsageRecord
        if units <= 0:
            raise ValueError("units must be positive")
        today = today or self.today()
        upsert(
            self._session,
            UsageRecord,
            {"user_id": user_id, "usage_date": today, "units_consumed": units},
            conflict_cols=("user_id", "usage_date"),
            update_values={
                "units_consumed": UsageRecord.units_consumed + units,
                "updated_at": func.now(),
            },
        )

    def consume_within_limit(
        self,
        user_id: int,
        units: int,
        limit: int,
        period: str,
        today: Optional[date] = None,
    ) -> bool:
        """
        Add `units` to today's counter only while the period total stays within
        `limit`. One INSERT ... ON CONFLICT DO UPDATE ... WHERE statement, so
        concurrent callers serialize on today's row and cannot overshoot.
        False when the quota is exhausted. Caller commits.
        """
        from carousel_billing.models import UsageRecord
        if units <= 0:
            raise ValueError("units must be positive")
        today = today or self.today()
        table = UsageRecord.__table__
        prior = table.alias("prior_days")
        earlier = (
            select(func.coalesce(func.sum(prior.c.units_consumed), 0))
            .where(
                prior.c.user_id == user_id,
                prior.c.usage_date >= period_start(period, today),
                prior.c.usage_date < today,
            )
            .scalar_subquery()
        )

        insert = dialect_insert(self._session)
        stmt = insert(table).from_select(
            ["user_id", "usage_date", "units_consumed"],
            select(
                literal(user_id, type_=table.c.user_id.type),
                literal(today, type_=table.c.usage_date.type),
                literal(units, type_=table.c.units_consumed.type),
            ).where(earlier + units <= limit),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "usage_date"],
            set_={"units_consumed": table.c.units_consumed + units, "updated_at": func.now()},
            where=table.c.units_consumed + earlier + units <= limit,
        )
        try:
            result = self._session.execute(stmt)
        except SQLAlchemyError as exc:
            raise EntitlementUnavailable("usage ledger unavailable") from exc
        return (result.rowcount or 0) > 0
