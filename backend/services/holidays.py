"""
Holiday Calendar

Business logic for:
- Adding and removing public holidays (recurring month/day or one-time date)
- Expanding the calendar into concrete dates for a year
- Answering is_holiday for the deadline calculator

The expanded schedule is cached in-process per database. Each lookup first
reads a small marker from the holiday table and rebuilds the schedule when it
changed, so writes from other workers, the seeding CLI or direct imports are
picked up as well as add/remove in this process.
"""

import calendar
import datetime as dt
import threading
from datetime import date, datetime
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple
import logging

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database.deadline_models import (
    PublicHolidayDB, DeadlineAuditLogDB, AuditEntityType, AuditAction, utc_now,
)
from database.transaction import atomic
from services.audit import AuditLogRepository
from utils.errors import ValidationError, NotFoundError, require_text

logger = logging.getLogger(__name__)

MIN_YEAR = 1900
MAX_YEAR = 2200


# ==================== PYDANTIC MODELS ====================

class HolidayCreate(BaseModel):
    """Request to add a public holiday"""
    name: Optional[str] = None
    is_recurring: bool = False
    date: Optional[dt.date] = None
    recurring_month: Optional[int] = None
    recurring_day: Optional[int] = None
    is_national: bool = True
    description: Optional[str] = None


class PublicHoliday(BaseModel):
    """Public holiday response model"""
    id: int
    name: str
    is_recurring: bool
    date: Optional[dt.date] = None
    recurring_month: Optional[int] = None
    recurring_day: Optional[int] = None
    is_national: bool
    description: Optional[str] = None
    created_by: str
    created_at: Optional[str] = None
    observed_date: Optional[dt.date] = None


# ==================== HELPER FUNCTIONS ====================

def _db_to_holiday(db_obj: PublicHolidayDB, observed_date: Optional[date] = None) -> PublicHoliday:
    return PublicHoliday(
        id=db_obj.id,
        name=db_obj.name,
        is_recurring=db_obj.is_recurring,
        date=db_obj.date,
        recurring_month=db_obj.recurring_month,
        recurring_day=db_obj.recurring_day,
        is_national=db_obj.is_national,
        description=db_obj.description,
        created_by=db_obj.created_by,
        created_at=db_obj.created_at.isoformat() if db_obj.created_at else None,
        observed_date=observed_date,
    )


def _snapshot(db_obj: PublicHolidayDB) -> dict:
    return {
        "id": db_obj.id,
        "name": db_obj.name,
        "is_recurring": db_obj.is_recurring,
        "date": db_obj.date,
        "recurring_month": db_obj.recurring_month,
        "recurring_day": db_obj.recurring_day,
        "is_national": db_obj.is_national,
    }


def validate_year(year: int) -> int:
    if isinstance(year, bool) or not isinstance(year, int) or not (MIN_YEAR <= year <= MAX_YEAR):
        raise ValidationError(
            f"year must be between {MIN_YEAR} and {MAX_YEAR}",
            field="year",
            details={"received_value": str(year)[:20]},
        )
    return year


def validate_holiday(data: HolidayCreate) -> None:
    """
    Check the recurring / one-time shape of a holiday.

    Recurring holidays need a valid month/day (29 February allowed) and no
    date; one-time holidays need a date and no month/day.
    """
    require_text(data.name, "name")

    if data.is_recurring:
        if data.date is not None:
            raise ValidationError("Recurring holidays take recurring_month/recurring_day, not date", field="date")
        if data.recurring_month is None:
            raise ValidationError("recurring_month is required for recurring holidays", field="recurring_month")
        if data.recurring_day is None:
            raise ValidationError("recurring_day is required for recurring holidays", field="recurring_day")
        if not 1 <= data.recurring_month <= 12:
            raise ValidationError("recurring_month must be between 1 and 12", field="recurring_month")
        # Leap year so 29 February is accepted
        last_day = calendar.monthrange(2024, data.recurring_month)[1]
        if not 1 <= data.recurring_day <= last_day:
            raise ValidationError(
                f"recurring_day must be between 1 and {last_day} for month {data.recurring_month}",
                field="recurring_day",
            )
    else:
        if data.date is None:
            raise ValidationError("date is required for one-time holidays", field="date")
        if data.recurring_month is not None or data.recurring_day is not None:
            raise ValidationError(
                "One-time holidays take date, not recurring_month/recurring_day",
                field="recurring_month" if data.recurring_month is not None else "recurring_day",
            )
        validate_year(data.date.year)


def occurrence_in_year(holiday: PublicHolidayDB, year: int) -> Optional[date]:
    """
    The concrete date a holiday falls on in `year`, or None.

    A recurring 29 February has no occurrence in non-leap years.
    """
    if holiday.is_recurring:
        if holiday.recurring_month == 2 and holiday.recurring_day == 29 and not calendar.isleap(year):
            return None
        return date(year, holiday.recurring_month, holiday.recurring_day)
    if holiday.date is not None and holiday.date.year == year:
        return holiday.date
    return None


# ==================== SCHEDULE ====================

class HolidaySchedule:
    """
    Snapshot of the holiday table, expanded lazily one year at a time.

    Built once per calculation (or shared through the cache) so holiday
    lookups across a year boundary read a consistent calendar.
    """

    def __init__(self, holidays: Iterable[PublicHolidayDB]):
        self._recurring: List[Tuple[int, int]] = []
        self._one_time: Dict[int, set] = {}
        for holiday in holidays:
            if holiday.is_recurring:
                self._recurring.append((holiday.recurring_month, holiday.recurring_day))
            elif holiday.date is not None:
                self._one_time.setdefault(holiday.date.year, set()).add(holiday.date)
        self._years: Dict[int, FrozenSet[date]] = {}
        self._lock = threading.Lock()

    def dates_for_year(self, year: int) -> FrozenSet[date]:
        dates = self._years.get(year)
        if dates is not None:
            return dates

        expanded = set(self._one_time.get(year, ()))
        leap = calendar.isleap(year)
        for month, day in self._recurring:
            if month == 2 and day == 29 and not leap:
                continue
            expanded.add(date(year, month, day))

        dates = frozenset(expanded)
        with self._lock:
            self._years[year] = dates
        return dates

    def is_holiday(self, day: date) -> bool:
        return day in self.dates_for_year(day.year)


# ==================== CACHE ====================

# Cached schedules are keyed by database and stamped with the table marker
# they were built from; a schedule is reused only while the marker matches.
_cache_lock = threading.Lock()
_cache_generation = 0
_schedule_cache: Dict[str, Tuple[tuple, HolidaySchedule]] = {}


def invalidate_holiday_cache() -> None:
    """Drop every cached schedule. Called after each holiday add/remove."""
    global _cache_generation
    with _cache_lock:
        _cache_generation += 1
        _schedule_cache.clear()


def _cache_key(session: AsyncSession) -> str:
    return str(session.bind.url) if session.bind is not None else "default"


# ==================== CALENDAR CLASS ====================

class HolidayCalendar:
    """Service for public holiday operations"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditLogRepository(session)

    # ==================== WRITE ====================

    async def add_holiday(self, data: HolidayCreate, changed_by: str) -> PublicHoliday:
        """Add a holiday and its CREATED audit entry"""
        changed_by = require_text(changed_by, "changed_by")
        validate_holiday(data)

        db_holiday = PublicHolidayDB(
            name=data.name.strip(),
            is_recurring=data.is_recurring,
            date=data.date if not data.is_recurring else None,
            recurring_month=data.recurring_month if data.is_recurring else None,
            recurring_day=data.recurring_day if data.is_recurring else None,
            is_national=data.is_national,
            description=data.description,
            created_by=changed_by,
            created_at=utc_now(),
        )

        try:
            async with atomic(self.session, "add public holiday"):
                self.session.add(db_holiday)
                await self.session.flush()
                self.audit.append(
                    AuditEntityType.HOLIDAY, db_holiday.id, AuditAction.CREATED, changed_by,
                    new_value=_snapshot(db_holiday),
                )
        finally:
            invalidate_holiday_cache()

        logger.info(f"Added public holiday {db_holiday.id}: {db_holiday.name}")
        return _db_to_holiday(db_holiday)

    async def remove_holiday(self, holiday_id: int, changed_by: str) -> None:
        """Remove a holiday; its audit history is kept"""
        changed_by = require_text(changed_by, "changed_by")
        db_holiday = await self.get_db(holiday_id)
        if not db_holiday:
            raise NotFoundError(f"Public holiday {holiday_id} not found")

        snapshot = _snapshot(db_holiday)
        try:
            async with atomic(self.session, f"remove public holiday {holiday_id}"):
                await self.session.delete(db_holiday)
                self.audit.append(
                    AuditEntityType.HOLIDAY, holiday_id, AuditAction.DELETED, changed_by,
                    old_value=snapshot,
                )
        finally:
            invalidate_holiday_cache()

        logger.info(f"Removed public holiday {holiday_id}")

    # ==================== READ ====================

    async def get_db(self, holiday_id: int) -> Optional[PublicHolidayDB]:
        result = await self.session.execute(
            select(PublicHolidayDB).where(PublicHolidayDB.id == holiday_id)
        )
        return result.scalar_one_or_none()

    async def _all_holidays(self) -> List[PublicHolidayDB]:
        result = await self.session.execute(select(PublicHolidayDB).order_by(PublicHolidayDB.id))
        return list(result.scalars().all())

    async def _table_marker(self) -> tuple:
        """
        Cheap fingerprint of the holiday table.

        Row count, highest id and latest creation time change on any insert or
        delete, including writes from other processes or made outside the
        calendar. The latest holiday audit id covers add/remove pairs that
        reuse an id.
        """
        holiday_stats = select(
            func.count(PublicHolidayDB.id),
            func.max(PublicHolidayDB.id),
            func.max(PublicHolidayDB.created_at),
        )
        last_audit = (
            select(func.max(DeadlineAuditLogDB.id))
            .where(DeadlineAuditLogDB.entity_type == AuditEntityType.HOLIDAY)
            .scalar_subquery()
        )
        row = (await self.session.execute(holiday_stats.add_columns(last_audit))).one()
        return tuple(str(value) if value is not None else None for value in row)

    async def load_schedule(self) -> HolidaySchedule:
        """Current holiday schedule, from cache when enabled and still current"""
        if not get_settings().HOLIDAY_CACHE_ENABLED:
            return HolidaySchedule(await self._all_holidays())

        key = _cache_key(self.session)
        marker = await self._table_marker()
        with _cache_lock:
            cached = _schedule_cache.get(key)
            generation = _cache_generation
        if cached is not None and cached[0] == marker:
            return cached[1]

        schedule = HolidaySchedule(await self._all_holidays())
        with _cache_lock:
            # A write committed while loading; the rows read may predate it
            if generation == _cache_generation:
                _schedule_cache[key] = (marker, schedule)
        logger.debug(f"Holiday schedule reloaded for {key}")
        return schedule

    async def get_holidays(self, year: int) -> List[date]:
        """Concrete holiday dates in `year`, ascending"""
        validate_year(year)
        schedule = await self.load_schedule()
        return sorted(schedule.dates_for_year(year))

    async def list_holidays(self, year: int) -> List[PublicHoliday]:
        """Holiday records that fall in `year`, with the date each is observed on"""
        validate_year(year)
        holidays = []
        for db_holiday in await self._all_holidays():
            observed = occurrence_in_year(db_holiday, year)
            if observed is not None:
                holidays.append(_db_to_holiday(db_holiday, observed_date=observed))
        holidays.sort(key=lambda h: (h.observed_date, h.id))
        return holidays

    async def list_all_holidays(self) -> List[PublicHoliday]:
        return [_db_to_holiday(h) for h in await self._all_holidays()]

    async def is_holiday(self, day: date) -> bool:
        require_date(day, "date")
        schedule = await self.load_schedule()
        return schedule.is_holiday(day)


def require_date(value, field: str) -> date:
    if value is None:
        raise ValidationError(f"{field} is required", field=field)
    if isinstance(value, datetime) or not isinstance(value, date):
        raise ValidationError(f"{field} must be a calendar date", field=field)
    return value
