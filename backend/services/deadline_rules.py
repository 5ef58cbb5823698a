"""
Deadline Rule Repository

Business logic for:
- Rule CRUD with statutory-minimum and validity-window validation
- Activation / deactivation
- Optimistic concurrency (version check on every write)
- Audit entries written in the same transaction as each change
"""

from datetime import date, datetime
from typing import List, Optional, Dict, Any
import logging

from pydantic import BaseModel
from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from database.deadline_models import (
    DeadlineRuleDB, TaxType, TriggerType, AuditEntityType, AuditAction, utc_now,
)
from database.transaction import atomic
from services.audit import AuditLogRepository
from utils.errors import (
    ValidationError, ConflictError, NotFoundError,
    require_text, require_present, require_non_negative,
)

logger = logging.getLogger(__name__)


# ==================== PYDANTIC MODELS ====================

class DeadlineRuleCreate(BaseModel):
    """Request to create a deadline rule"""
    tax_type: Optional[TaxType] = None
    rule_name: Optional[str] = None
    description: Optional[str] = None
    days_from_trigger: Optional[int] = None
    trigger_type: Optional[TriggerType] = None
    adjust_for_weekends: bool = True
    adjust_for_holidays: bool = True
    statutory_minimum_days: int = 0
    is_default: bool = True
    is_active: bool = True
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None


class DeadlineRuleUpdate(BaseModel):
    """
    Partial update of a deadline rule.

    Only fields present in the request are applied. expected_version is the
    version the caller last read; a mismatch is rejected as a conflict.
    """
    rule_name: Optional[str] = None
    description: Optional[str] = None
    days_from_trigger: Optional[int] = None
    trigger_type: Optional[TriggerType] = None
    adjust_for_weekends: Optional[bool] = None
    adjust_for_holidays: Optional[bool] = None
    statutory_minimum_days: Optional[int] = None
    is_default: Optional[bool] = None
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None
    expected_version: Optional[int] = None


class DeadlineRule(BaseModel):
    """Deadline rule response model"""
    id: int
    tax_type: str
    rule_name: str
    description: Optional[str] = None
    days_from_trigger: int
    trigger_type: str
    adjust_for_weekends: bool
    adjust_for_holidays: bool
    statutory_minimum_days: int
    is_default: bool
    is_active: bool
    effective_date: date
    expiry_date: Optional[date] = None
    created_by: str
    created_at: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: Optional[str] = None
    version: int


# Fields an update may touch; also the set compared for audit entries
EDITABLE_FIELDS = (
    "rule_name", "description", "days_from_trigger", "trigger_type",
    "adjust_for_weekends", "adjust_for_holidays", "statutory_minimum_days",
    "is_default", "effective_date", "expiry_date",
)


# ==================== HELPER FUNCTIONS ====================

def _format_datetime(dt: Optional[datetime]) -> Optional[str]:
    if not dt:
        return None
    return dt.isoformat()


def _db_to_rule(db_obj: DeadlineRuleDB) -> DeadlineRule:
    """Convert database model to Pydantic model"""
    return DeadlineRule(
        id=db_obj.id,
        tax_type=db_obj.tax_type.value,
        rule_name=db_obj.rule_name,
        description=db_obj.description,
        days_from_trigger=db_obj.days_from_trigger,
        trigger_type=db_obj.trigger_type.value,
        adjust_for_weekends=db_obj.adjust_for_weekends,
        adjust_for_holidays=db_obj.adjust_for_holidays,
        statutory_minimum_days=db_obj.statutory_minimum_days,
        is_default=db_obj.is_default,
        is_active=db_obj.is_active,
        effective_date=db_obj.effective_date,
        expiry_date=db_obj.expiry_date,
        created_by=db_obj.created_by,
        created_at=_format_datetime(db_obj.created_at),
        updated_by=db_obj.updated_by,
        updated_at=_format_datetime(db_obj.updated_at),
        version=db_obj.version,
    )


def _get_snapshot_fields(db_obj: DeadlineRuleDB) -> Dict[str, Any]:
    """Editable fields for before/after comparison"""
    return {field: getattr(db_obj, field) for field in EDITABLE_FIELDS}


def _full_snapshot(db_obj: DeadlineRuleDB) -> Dict[str, Any]:
    snapshot = _get_snapshot_fields(db_obj)
    snapshot.update({
        "id": db_obj.id,
        "tax_type": db_obj.tax_type,
        "is_active": db_obj.is_active,
    })
    return snapshot


def validate_rule_fields(fields: Dict[str, Any]) -> None:
    """
    Validate a complete rule state (creation payload or merged update).

    Raises:
        ValidationError on the first violated constraint
    """
    require_present(fields.get("tax_type"), "tax_type")
    require_text(fields.get("rule_name"), "rule_name")
    require_present(fields.get("trigger_type"), "trigger_type")
    require_present(fields.get("effective_date"), "effective_date")

    days = require_non_negative(fields.get("days_from_trigger"), "days_from_trigger")
    minimum = require_non_negative(fields.get("statutory_minimum_days"), "statutory_minimum_days")

    for flag in ("adjust_for_weekends", "adjust_for_holidays", "is_default"):
        if fields.get(flag) is None:
            raise ValidationError(f"{flag} is required", field=flag)

    if days < minimum:
        raise ValidationError(
            f"days_from_trigger ({days}) cannot be less than statutory_minimum_days ({minimum})",
            field="days_from_trigger",
            details={"days_from_trigger": days, "statutory_minimum_days": minimum},
        )

    effective = fields["effective_date"]
    expiry = fields.get("expiry_date")
    if expiry is not None and effective > expiry:
        raise ValidationError(
            f"effective_date ({effective.isoformat()}) cannot be after expiry_date ({expiry.isoformat()})",
            field="effective_date",
        )


def check_expected_version(db_obj: DeadlineRuleDB, expected_version: Optional[int]) -> None:
    if expected_version is not None and expected_version != db_obj.version:
        raise ConflictError(
            f"Deadline rule {db_obj.id} was modified (version {db_obj.version}, expected {expected_version}); "
            "re-read and retry",
            details={"current_version": db_obj.version, "expected_version": expected_version},
        )


# ==================== REPOSITORY CLASS ====================

class RuleRepository:
    """Repository for deadline rule operations"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditLogRepository(session)

    # ==================== CREATE ====================

    async def create_rule(self, data: DeadlineRuleCreate, changed_by: str) -> DeadlineRule:
        """Create a new rule and its CREATED audit entry"""
        changed_by = require_text(changed_by, "changed_by")
        fields = data.model_dump()
        validate_rule_fields(fields)

        db_rule = DeadlineRuleDB(
            tax_type=data.tax_type,
            rule_name=data.rule_name.strip(),
            description=data.description,
            days_from_trigger=data.days_from_trigger,
            trigger_type=data.trigger_type,
            adjust_for_weekends=data.adjust_for_weekends,
            adjust_for_holidays=data.adjust_for_holidays,
            statutory_minimum_days=data.statutory_minimum_days,
            is_default=data.is_default,
            is_active=data.is_active,
            effective_date=data.effective_date,
            expiry_date=data.expiry_date,
            created_by=changed_by,
            created_at=utc_now(),
        )

        async with atomic(self.session, "create deadline rule"):
            self.session.add(db_rule)
            await self.session.flush()
            self.audit.append(
                AuditEntityType.RULE, db_rule.id, AuditAction.CREATED, changed_by,
                new_value=_full_snapshot(db_rule),
            )

        logger.info(f"Created deadline rule {db_rule.id} for {db_rule.tax_type.value}")
        return _db_to_rule(db_rule)

    # ==================== READ ====================

    async def get_db(self, rule_id: int) -> Optional[DeadlineRuleDB]:
        """Get raw database object"""
        result = await self.session.execute(
            select(DeadlineRuleDB).where(DeadlineRuleDB.id == rule_id)
        )
        return result.scalar_one_or_none()

    async def _require_db(self, rule_id: int) -> DeadlineRuleDB:
        db_rule = await self.get_db(rule_id)
        if not db_rule:
            raise NotFoundError(f"Deadline rule {rule_id} not found")
        return db_rule

    async def get_rule(self, rule_id: int) -> DeadlineRule:
        return _db_to_rule(await self._require_db(rule_id))

    async def active_rules_db(
        self,
        tax_type: Optional[TaxType] = None,
        as_of: Optional[date] = None,
    ) -> List[DeadlineRuleDB]:
        """Active rules whose [effective_date, expiry_date] window contains as_of"""
        as_of = as_of or date.today()

        query = select(DeadlineRuleDB).where(
            DeadlineRuleDB.is_active.is_(True),
            DeadlineRuleDB.effective_date <= as_of,
            or_(DeadlineRuleDB.expiry_date.is_(None), DeadlineRuleDB.expiry_date >= as_of),
        )
        if tax_type is not None:
            query = query.where(DeadlineRuleDB.tax_type == tax_type)

        query = query.order_by(
            DeadlineRuleDB.tax_type,
            DeadlineRuleDB.is_default,
            DeadlineRuleDB.created_at.desc(),
            DeadlineRuleDB.id.desc(),
        )

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_active_rules(
        self,
        tax_type: Optional[TaxType] = None,
        as_of: Optional[date] = None,
    ) -> List[DeadlineRule]:
        return [_db_to_rule(r) for r in await self.active_rules_db(tax_type, as_of)]

    async def list_rules(
        self,
        tax_type: Optional[TaxType] = None,
        include_inactive: bool = True,
    ) -> List[DeadlineRule]:
        """Every rule regardless of validity window"""
        query = select(DeadlineRuleDB)
        if tax_type is not None:
            query = query.where(DeadlineRuleDB.tax_type == tax_type)
        if not include_inactive:
            query = query.where(DeadlineRuleDB.is_active.is_(True))
        query = query.order_by(DeadlineRuleDB.tax_type, DeadlineRuleDB.id)

        result = await self.session.execute(query)
        return [_db_to_rule(r) for r in result.scalars().all()]

    # ==================== UPDATE ====================

    async def update_rule(
        self,
        rule_id: int,
        data: DeadlineRuleUpdate,
        changed_by: str,
    ) -> DeadlineRule:
        """Apply a partial update; one audit entry per changed field"""
        changed_by = require_text(changed_by, "changed_by")
        db_rule = await self._require_db(rule_id)

        updates = data.model_dump(exclude_unset=True)
        expected_version = updates.pop("expected_version", None)
        check_expected_version(db_rule, expected_version)

        before = _get_snapshot_fields(db_rule)
        changes = {k: v for k, v in updates.items() if before.get(k) != v}
        if not changes:
            return _db_to_rule(db_rule)

        merged = {**before, "tax_type": db_rule.tax_type, **changes}
        validate_rule_fields(merged)
        if "rule_name" in changes:
            changes["rule_name"] = changes["rule_name"].strip()

        async with atomic(self.session, f"update deadline rule {rule_id}"):
            for field, value in changes.items():
                setattr(db_rule, field, value)
            db_rule.updated_by = changed_by
            db_rule.updated_at = utc_now()

            self.audit.append_changes(
                AuditEntityType.RULE, rule_id, AuditAction.UPDATED, changed_by,
                before=before, after=_get_snapshot_fields(db_rule),
            )

        logger.info(f"Updated deadline rule {rule_id}: {sorted(changes)}")
        return _db_to_rule(db_rule)

    async def activate_rule(
        self,
        rule_id: int,
        changed_by: str,
        expected_version: Optional[int] = None,
    ) -> DeadlineRule:
        return await self._set_active(rule_id, True, changed_by, expected_version)

    async def deactivate_rule(
        self,
        rule_id: int,
        changed_by: str,
        expected_version: Optional[int] = None,
    ) -> DeadlineRule:
        return await self._set_active(rule_id, False, changed_by, expected_version)

    async def _set_active(
        self,
        rule_id: int,
        is_active: bool,
        changed_by: str,
        expected_version: Optional[int],
    ) -> DeadlineRule:
        changed_by = require_text(changed_by, "changed_by")
        db_rule = await self._require_db(rule_id)
        check_expected_version(db_rule, expected_version)

        if db_rule.is_active == is_active:
            return _db_to_rule(db_rule)

        action = AuditAction.ACTIVATED if is_active else AuditAction.DEACTIVATED
        previous = db_rule.is_active

        async with atomic(self.session, f"{action.value.lower()} deadline rule {rule_id}"):
            db_rule.is_active = is_active
            db_rule.updated_by = changed_by
            db_rule.updated_at = utc_now()
            self.audit.append(
                AuditEntityType.RULE, rule_id, action, changed_by,
                field_name="is_active", old_value=previous, new_value=is_active,
            )

        logger.info(f"{action.value.title()} deadline rule {rule_id}")
        return _db_to_rule(db_rule)

    # ==================== DELETE ====================

    async def delete_rule(self, rule_id: int, changed_by: str) -> None:
        """
        Hard-delete a rule that no audit entry references.

        Rules with history must be retired (expiry_date or deactivation) instead.
        """
        changed_by = require_text(changed_by, "changed_by")
        db_rule = await self._require_db(rule_id)

        if await self.audit.has_entries_for(AuditEntityType.RULE, rule_id):
            raise ConflictError(
                f"Deadline rule {rule_id} is referenced by audit history and cannot be deleted; "
                "deactivate it or set an expiry date instead"
            )

        snapshot = _full_snapshot(db_rule)
        async with atomic(self.session, f"delete deadline rule {rule_id}"):
            await self.session.delete(db_rule)
            self.audit.append(
                AuditEntityType.RULE, rule_id, AuditAction.DELETED, changed_by,
                old_value=snapshot,
            )

        logger.info(f"Deleted deadline rule {rule_id}")
