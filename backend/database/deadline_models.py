"""
CTIS Deadline Engine - Database Models

Tables:
- deadline_rules: Per-tax-type deadline rule configuration
- public_holidays: Recurring and one-time non-business days
- client_deadline_extensions: Per-client extensions with approval metadata
- deadline_audit_logs: Append-only history of every configuration change
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Date, DateTime,
    Index, CheckConstraint, Enum as SQLEnum, event
)
from sqlalchemy.orm import Session

from database.connection import Base
from utils.errors import ConflictError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC so they compare with aware ones."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ==================== ENUMS ====================

class TaxType(str, PyEnum):
    """Tax obligation categories with a statutory filing deadline"""
    GST = "GST"
    PAYE = "PAYE"
    INCOME_TAX = "INCOME_TAX"
    CORPORATE_INCOME_TAX = "CORPORATE_INCOME_TAX"
    PERSONAL_INCOME_TAX = "PERSONAL_INCOME_TAX"
    PAYROLL_TAX = "PAYROLL_TAX"
    EXCISE_DUTY = "EXCISE_DUTY"
    WITHHOLDING_TAX = "WITHHOLDING_TAX"


class TriggerType(str, PyEnum):
    """What the trigger date of a rule represents"""
    PERIOD_END = "PERIOD_END"                    # end of month / quarter / year
    FIXED_CALENDAR_DATE = "FIXED_CALENDAR_DATE"
    EVENT_DATE = "EVENT_DATE"                    # employment start, delivery, import


class AuditEntityType(str, PyEnum):
    RULE = "RULE"
    HOLIDAY = "HOLIDAY"
    EXTENSION = "EXTENSION"


class AuditAction(str, PyEnum):
    CREATED = "CREATED"
    UPDATED = "UPDATED"
    ACTIVATED = "ACTIVATED"
    DEACTIVATED = "DEACTIVATED"
    DELETED = "DELETED"
    GRANTED = "GRANTED"
    REVOKED = "REVOKED"


# ==================== DATABASE MODELS ====================

class DeadlineRuleDB(Base):
    """
    Deadline rule for one tax type.

    days_from_trigger is counted in calendar days. The version column is the
    optimistic-concurrency counter; SQLAlchemy bumps it on every UPDATE and
    raises StaleDataError when another writer got there first.
    """
    __tablename__ = "deadline_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tax_type = Column(SQLEnum(TaxType, name="tax_type_enum"), nullable=False, index=True)
    rule_name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    days_from_trigger = Column(Integer, nullable=False)
    trigger_type = Column(SQLEnum(TriggerType, name="trigger_type_enum"), nullable=False)
    adjust_for_weekends = Column(Boolean, nullable=False, default=True)
    adjust_for_holidays = Column(Boolean, nullable=False, default=True)
    statutory_minimum_days = Column(Integer, nullable=False, default=0)

    is_default = Column(Boolean, nullable=False, default=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    effective_date = Column(Date, nullable=False)
    expiry_date = Column(Date, nullable=True)

    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_by = Column(String(100), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, onupdate=utc_now)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_deadline_rules_tax_type_active", "tax_type", "is_active"),
        CheckConstraint("days_from_trigger >= 0", name="ck_deadline_rules_days_non_negative"),
        CheckConstraint("statutory_minimum_days >= 0", name="ck_deadline_rules_minimum_non_negative"),
    )


class PublicHolidayDB(Base):
    """
    A non-business day. Recurring holidays carry (recurring_month, recurring_day)
    and no date; one-time holidays carry a date and no month/day.
    """
    __tablename__ = "public_holidays"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False)
    is_recurring = Column(Boolean, nullable=False, default=False)
    date = Column(Date, nullable=True, index=True)
    recurring_month = Column(Integer, nullable=True)
    recurring_day = Column(Integer, nullable=True)
    is_national = Column(Boolean, nullable=False, default=True)
    description = Column(Text, nullable=True)

    created_by = Column(String(100), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "(is_recurring AND date IS NULL AND recurring_month IS NOT NULL AND recurring_day IS NOT NULL) "
            "OR (NOT is_recurring AND date IS NOT NULL AND recurring_month IS NULL AND recurring_day IS NULL)",
            name="ck_public_holidays_date_shape",
        ),
    )


class ClientDeadlineExtensionDB(Base):
    """
    Additional days granted to one client for one tax type.

    tax_year NULL means the extension applies to every year. Once granted
    the row only ever moves to revoked.
    """
    __tablename__ = "client_deadline_extensions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    client_id = Column(Integer, nullable=False, index=True)
    tax_type = Column(SQLEnum(TaxType, name="tax_type_enum"), nullable=False)
    tax_year = Column(Integer, nullable=True)
    extension_days = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)

    approved_by = Column(String(100), nullable=False)
    granted_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    expiry_date = Column(Date, nullable=True)

    revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    revoked_by = Column(String(100), nullable=True)
    version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_client_deadline_extensions_client_tax", "client_id", "tax_type"),
        CheckConstraint("extension_days >= 0", name="ck_client_deadline_extensions_days_non_negative"),
    )


class DeadlineAuditLogDB(Base):
    """
    Immutable audit trail for rule, holiday and extension changes.

    One row per changed field on updates; creations and deletions store a
    JSON snapshot in new_value / old_value with field_name NULL.
    """
    __tablename__ = "deadline_audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(SQLEnum(AuditEntityType, name="audit_entity_type_enum"), nullable=False)
    entity_id = Column(Integer, nullable=False)
    action = Column(SQLEnum(AuditAction, name="audit_action_enum"), nullable=False, index=True)
    field_name = Column(String(100), nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    changed_by = Column(String(100), nullable=False)
    changed_at = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_deadline_audit_logs_entity", "entity_type", "entity_id"),
    )


# ==================== APPEND-ONLY ENFORCEMENT ====================

@event.listens_for(DeadlineAuditLogDB, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ConflictError(f"Audit log entry {target.id} is append-only and cannot be updated")


@event.listens_for(DeadlineAuditLogDB, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ConflictError(f"Audit log entry {target.id} is append-only and cannot be deleted")


@event.listens_for(Session, "do_orm_execute")
def _reject_audit_bulk_writes(orm_execute_state):
    if not (orm_execute_state.is_update or orm_execute_state.is_delete):
        return
    mapper = orm_execute_state.bind_mapper
    if mapper is not None and mapper.class_ is DeadlineAuditLogDB:
        raise ConflictError("Audit log entries are append-only")
