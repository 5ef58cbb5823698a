"""
Default deadline configuration.

Seeds the Sierra Leone statutory deadline rules and national public holidays.
Every insert goes through the repositories, so seeded rows carry audit
entries attributed to the system user. Running the seeder twice adds nothing
the second time.
"""

from datetime import date
from typing import List
import logging

from dateutil.easter import easter
from dateutil.relativedelta import relativedelta
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.deadline_models import (
    DeadlineRuleDB, PublicHolidayDB, TaxType, TriggerType,
)
from services.deadline_rules import RuleRepository, DeadlineRuleCreate
from services.holidays import HolidayCalendar, HolidayCreate

logger = logging.getLogger(__name__)

SYSTEM_USER = "system"
DEFAULT_EFFECTIVE_DATE = date(2024, 1, 1)


def _rule(tax_type, name, description, days, trigger_type, is_default=True, is_active=True) -> DeadlineRuleCreate:
    return DeadlineRuleCreate(
        tax_type=tax_type,
        rule_name=name,
        description=description,
        days_from_trigger=days,
        trigger_type=trigger_type,
        adjust_for_weekends=True,
        adjust_for_holidays=True,
        statutory_minimum_days=days,
        is_default=is_default,
        is_active=is_active,
        effective_date=DEFAULT_EFFECTIVE_DATE,
    )


DEFAULT_RULES: List[DeadlineRuleCreate] = [
    _rule(
        TaxType.GST, "GST Standard Filing Deadline",
        "GST returns must be filed within 21 days of the end of the tax period",
        21, TriggerType.PERIOD_END,
    ),
    _rule(
        TaxType.CORPORATE_INCOME_TAX, "Corporate Income Tax Annual Return Deadline",
        "Corporate income tax returns must be filed within 4 months of the end of the accounting period",
        120, TriggerType.PERIOD_END,
    ),
    _rule(
        TaxType.PERSONAL_INCOME_TAX, "Personal Income Tax Annual Return Deadline",
        "Personal income tax returns must be filed within 3 months of the end of the tax year",
        90, TriggerType.PERIOD_END,
    ),
    _rule(
        TaxType.PAYE, "PAYE Monthly Remittance Deadline",
        "PAYE must be remitted within 21 days of the end of each month",
        21, TriggerType.PERIOD_END,
    ),
    _rule(
        TaxType.PAYROLL_TAX, "Payroll Tax Annual Return Deadline",
        "Annual payroll tax returns must be filed by January 31 of the following year",
        31, TriggerType.PERIOD_END,
    ),
    # Inactive until enabled: as an override it governs every payroll calculation
    _rule(
        TaxType.PAYROLL_TAX, "Payroll Tax Foreign Employee Registration",
        "Foreign employee payroll tax registration must be completed within 1 month of employment start",
        30, TriggerType.EVENT_DATE, is_default=False, is_active=False,
    ),
    _rule(
        TaxType.EXCISE_DUTY, "Excise Duty Payment Deadline",
        "Excise duty must be paid within 21 days of goods delivery or import",
        21, TriggerType.EVENT_DATE,
    ),
    _rule(
        TaxType.WITHHOLDING_TAX, "Withholding Tax Monthly Remittance",
        "Withholding tax must be remitted within 21 days of the end of each month",
        21, TriggerType.PERIOD_END,
    ),
]

RECURRING_HOLIDAYS = [
    HolidayCreate(name="New Year's Day", is_recurring=True, recurring_month=1, recurring_day=1,
                  description="First day of the year"),
    HolidayCreate(name="Independence Day", is_recurring=True, recurring_month=4, recurring_day=27,
                  description="Sierra Leone Independence Day"),
    HolidayCreate(name="Christmas Day", is_recurring=True, recurring_month=12, recurring_day=25,
                  description="Christmas celebration"),
    HolidayCreate(name="Boxing Day", is_recurring=True, recurring_month=12, recurring_day=26,
                  description="Day after Christmas"),
]


def easter_holidays(year: int) -> List[HolidayCreate]:
    """Good Friday and Easter Monday for one year (Western computus)."""
    easter_sunday = easter(year)
    return [
        HolidayCreate(name="Good Friday", date=easter_sunday + relativedelta(days=-2),
                      description="Good Friday observance"),
        HolidayCreate(name="Easter Monday", date=easter_sunday + relativedelta(days=+1),
                      description="Easter Monday observance"),
    ]


async def seed_default_rules(session: AsyncSession) -> int:
    """Create each default rule unless a rule with the same tax type and name exists."""
    result = await session.execute(select(DeadlineRuleDB.tax_type, DeadlineRuleDB.rule_name))
    existing = {(row[0], row[1]) for row in result.all()}

    repo = RuleRepository(session)
    created = 0
    for rule in DEFAULT_RULES:
        if (rule.tax_type, rule.rule_name) in existing:
            continue
        await repo.create_rule(rule, SYSTEM_USER)
        created += 1

    logger.info(f"Seeded {created} default deadline rules ({len(DEFAULT_RULES) - created} already present)")
    return created


async def seed_public_holidays(session: AsyncSession, year: int) -> int:
    """Create the recurring national holidays and that year's Easter holidays if missing."""
    result = await session.execute(
        select(PublicHolidayDB.name, PublicHolidayDB.is_recurring, PublicHolidayDB.date)
    )
    existing = {(row[0], row[1], row[2]) for row in result.all()}

    calendar_service = HolidayCalendar(session)
    created = 0
    for holiday in RECURRING_HOLIDAYS + easter_holidays(year):
        if (holiday.name, holiday.is_recurring, holiday.date) in existing:
            continue
        await calendar_service.add_holiday(holiday, SYSTEM_USER)
        created += 1

    logger.info(f"Seeded {created} public holidays for {year}")
    return created


async def seed_defaults(session: AsyncSession, holiday_year: int) -> dict:
    rules = await seed_default_rules(session)
    holidays = await seed_public_holidays(session, holiday_year)
    return {"rules_created": rules, "holidays_created": holidays}
