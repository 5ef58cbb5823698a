"""
Deadline Calculator

Computes the statutory due date for a (tax type, trigger date, client):

    base      = trigger_date + rule.days_from_trigger
    extended  = base + active extension days (0 when none)
    adjusted  = extended rolled forward past weekends / holidays
    deadline  = adjusted, or the statutory floor (trigger_date +
                statutory_minimum_days) rolled forward when adjusted falls short

The calculator is read-only: it never writes to the database, and the same
inputs against the same configuration always give the same date.
"""

from datetime import date, datetime, timedelta
from typing import Callable, Iterable, Optional
import logging

from pydantic import BaseModel

from sqlalchemy.ext.asyncio import AsyncSession

from database.deadline_models import DeadlineRuleDB, TaxType, as_utc
from services.deadline_rules import RuleRepository
from services.extensions import ExtensionRegistry
from services.holidays import HolidayCalendar
from utils.errors import ValidationError, NoApplicableRuleError

logger = logging.getLogger(__name__)

# Upper bound on forward adjustment; a calendar that blocks every day for this
# long cannot produce a deadline
MAX_ADJUSTMENT_DAYS = 3660


# ==================== MODELS ====================

class DeadlineRequest(BaseModel):
    """Request body for a deadline calculation"""
    tax_type: Optional[str] = None
    trigger_date: Optional[date] = None
    client_id: Optional[int] = None
    tax_year: Optional[int] = None


class DeadlineCalculation(BaseModel):
    """Deadline with the steps that produced it"""
    tax_type: str
    trigger_date: date
    deadline: date
    rule_id: int
    rule_name: str
    days_from_trigger: int
    base_date: date
    client_id: Optional[int] = None
    extension_id: Optional[int] = None
    extension_days: int = 0
    extended_date: date
    adjusted_date: date
    adjustment_days: int = 0
    statutory_minimum_days: int
    statutory_floor_date: date
    statutory_floor_applied: bool = False


# ==================== PURE FUNCTIONS ====================

def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def rule_applies_on(rule: DeadlineRuleDB, as_of: date) -> bool:
    if not rule.is_active or rule.effective_date > as_of:
        return False
    return rule.expiry_date is None or as_of <= rule.expiry_date


def select_rule(rules: Iterable[DeadlineRuleDB], trigger_date: date) -> Optional[DeadlineRuleDB]:
    """
    Pick the governing rule among a tax type's rules.

    Only active rules whose validity window contains trigger_date qualify.
    A non-default (override) rule beats a default one; among equals the most
    recently created wins, then the highest id.
    """
    candidates = [r for r in rules if rule_applies_on(r, trigger_date)]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda r: (not r.is_default, as_utc(r.created_at), r.id),
    )


def adjust_forward(
    day: date,
    adjust_for_weekends: bool,
    adjust_for_holidays: bool,
    is_holiday: Callable[[date], bool],
) -> date:
    """
    Roll a date forward to the first day that is neither a weekend (when
    adjust_for_weekends) nor a holiday (when adjust_for_holidays).

    Repeats until stable, so a holiday that lands on the Monday after a
    weekend pushes the date on to Tuesday.
    """
    start = day
    while True:
        if adjust_for_weekends and is_weekend(day):
            day += timedelta(days=1)
        elif adjust_for_holidays and is_holiday(day):
            day += timedelta(days=1)
        else:
            return day

        if (day - start).days > MAX_ADJUSTMENT_DAYS:
            raise ValidationError(
                f"No business day within {MAX_ADJUSTMENT_DAYS} days of {start.isoformat()}; "
                "check the holiday calendar",
                details={"start_date": start.isoformat()},
            )


def compute_deadline(
    rule: DeadlineRuleDB,
    trigger_date: date,
    tax_type: TaxType,
    is_holiday: Callable[[date], bool],
    extension=None,
    client_id: Optional[int] = None,
) -> DeadlineCalculation:
    """Apply a rule (and optional extension) to a trigger date"""
    base_date = trigger_date + timedelta(days=rule.days_from_trigger)
    extension_days = extension.extension_days if extension is not None else 0
    extended_date = base_date + timedelta(days=extension_days)

    adjusted_date = adjust_forward(
        extended_date,
        rule.adjust_for_weekends,
        rule.adjust_for_holidays,
        is_holiday,
    )

    # Stale configuration can leave days_from_trigger below the minimum
    floor_date = trigger_date + timedelta(days=rule.statutory_minimum_days)
    floor_applied = adjusted_date < floor_date
    if floor_applied:
        deadline = adjust_forward(
            floor_date,
            rule.adjust_for_weekends,
            rule.adjust_for_holidays,
            is_holiday,
        )
    else:
        deadline = adjusted_date

    return DeadlineCalculation(
        tax_type=tax_type.value,
        trigger_date=trigger_date,
        deadline=deadline,
        rule_id=rule.id,
        rule_name=rule.rule_name,
        days_from_trigger=rule.days_from_trigger,
        base_date=base_date,
        client_id=client_id,
        extension_id=extension.id if extension is not None else None,
        extension_days=extension_days,
        extended_date=extended_date,
        adjusted_date=adjusted_date,
        adjustment_days=(adjusted_date - extended_date).days,
        statutory_minimum_days=rule.statutory_minimum_days,
        statutory_floor_date=floor_date,
        statutory_floor_applied=floor_applied,
    )


def _coerce_tax_type(tax_type) -> TaxType:
    if tax_type is None:
        raise ValidationError("tax_type is required", field="tax_type")
    if isinstance(tax_type, TaxType):
        return tax_type
    try:
        return TaxType(str(tax_type).strip().upper())
    except ValueError as e:
        raise ValidationError(
            f"Unknown tax_type: {tax_type}",
            field="tax_type",
            details={"allowed": [t.value for t in TaxType]},
        ) from e


def _coerce_trigger_date(trigger_date) -> date:
    if trigger_date is None:
        raise ValidationError("trigger_date is required", field="trigger_date")
    if isinstance(trigger_date, datetime):
        return trigger_date.date()
    if not isinstance(trigger_date, date):
        raise ValidationError("trigger_date must be a calendar date", field="trigger_date")
    return trigger_date


# ==================== CALCULATOR CLASS ====================

class DeadlineCalculator:
    """Read-only deadline calculation over the rule, extension and holiday stores"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.rules = RuleRepository(session)
        self.extensions = ExtensionRegistry(session)
        self.holidays = HolidayCalendar(session)

    async def explain_deadline(
        self,
        tax_type,
        trigger_date,
        client_id: Optional[int] = None,
        tax_year: Optional[int] = None,
    ) -> DeadlineCalculation:
        """
        Compute a deadline and return every intermediate step.

        tax_year defaults to the trigger date's year when selecting a
        year-scoped client extension.

        Raises:
            ValidationError: missing or malformed input
            NoApplicableRuleError: no active rule covers tax_type on trigger_date
        """
        tax_type = _coerce_tax_type(tax_type)
        trigger_date = _coerce_trigger_date(trigger_date)
        if client_id is not None and (isinstance(client_id, bool) or not isinstance(client_id, int)):
            raise ValidationError("client_id must be an integer", field="client_id")

        rules = await self.rules.active_rules_db(tax_type, trigger_date)
        rule = select_rule(rules, trigger_date)
        if rule is None:
            raise NoApplicableRuleError(
                f"No active deadline rule for {tax_type.value} on {trigger_date.isoformat()}",
                field="tax_type",
                details={"tax_type": tax_type.value, "trigger_date": trigger_date.isoformat()},
            )

        extension = None
        if client_id is not None:
            extension = await self.extensions.find_active_extension_db(
                client_id,
                tax_type,
                tax_year if tax_year is not None else trigger_date.year,
                trigger_date,
            )

        if rule.adjust_for_holidays:
            schedule = await self.holidays.load_schedule()
            is_holiday = schedule.is_holiday
        else:
            is_holiday = _never_holiday

        calculation = compute_deadline(
            rule, trigger_date, tax_type, is_holiday,
            extension=extension, client_id=client_id,
        )

        logger.debug(
            f"Deadline for {tax_type.value} from {trigger_date.isoformat()}: "
            f"{calculation.deadline.isoformat()} (rule {rule.id}"
            f"{f', extension {extension.id}' if extension is not None else ''})"
        )
        return calculation

    async def calculate_deadline(
        self,
        tax_type,
        trigger_date,
        client_id: Optional[int] = None,
        tax_year: Optional[int] = None,
    ) -> date:
        calculation = await self.explain_deadline(tax_type, trigger_date, client_id, tax_year)
        return calculation.deadline


def _never_holiday(day: date) -> bool:
    return False
