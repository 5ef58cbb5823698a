"""
Deadline Rules Admin Router

Administrative API for deadline configuration:
- Rules: list, create, update, activate/deactivate, delete
- Public holidays: list by year, add, remove
- Client extensions: grant, list, resolve active, revoke
- Audit log: query and per-entity history

The back office authenticates its users and enforces who may change what;
the acting user is passed explicitly in every mutation.
"""

from datetime import date
from typing import Optional
import logging

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from database.deadline_models import TaxType, AuditEntityType, AuditAction
from middleware.internal_auth import require_internal_service
from services.audit import AuditLogRepository, AuditLogFilter
from services.deadline_rules import RuleRepository, DeadlineRuleCreate, DeadlineRuleUpdate
from services.extensions import ExtensionRegistry, ExtensionGrant
from services.holidays import HolidayCalendar, HolidayCreate
from utils.errors import success_response

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/admin/deadline-rules",
    tags=["Deadline Rules Admin"],
    dependencies=[Depends(require_internal_service)],
)


# ==================== REQUEST MODELS ====================

class CreateRuleRequest(DeadlineRuleCreate):
    changed_by: Optional[str] = None


class UpdateRuleRequest(DeadlineRuleUpdate):
    changed_by: Optional[str] = None


class RuleStateRequest(BaseModel):
    changed_by: Optional[str] = None
    expected_version: Optional[int] = None


class CreateHolidayRequest(HolidayCreate):
    changed_by: Optional[str] = None


class RevokeExtensionRequest(BaseModel):
    revoked_by: Optional[str] = None
    reason: Optional[str] = None


def _dump(model) -> dict:
    return model.model_dump(mode="json")


# ==================== RULE LISTING ====================

@router.get("")
async def list_active_rules(
    tax_type: Optional[TaxType] = Query(None, description="Filter by tax type"),
    as_of: Optional[date] = Query(None, description="Validity date (defaults to today)"),
    db: AsyncSession = Depends(get_db)
):
    """Active rules in force on as_of"""
    rules = await RuleRepository(db).list_active_rules(tax_type, as_of)
    return success_response([_dump(r) for r in rules])


@router.get("/all")
async def list_all_rules(
    tax_type: Optional[TaxType] = Query(None, description="Filter by tax type"),
    include_inactive: bool = Query(True),
    db: AsyncSession = Depends(get_db)
):
    """Every rule, including inactive and expired ones"""
    rules = await RuleRepository(db).list_rules(tax_type, include_inactive)
    return success_response([_dump(r) for r in rules])


@router.post("", status_code=201)
async def create_rule(
    request: CreateRuleRequest,
    db: AsyncSession = Depends(get_db)
):
    data = DeadlineRuleCreate(**request.model_dump(exclude={"changed_by"}))
    rule = await RuleRepository(db).create_rule(data, request.changed_by)
    return success_response(_dump(rule))


# ==================== AUDIT LOG ====================

@router.get("/audit")
async def list_audit_entries(
    entity_type: Optional[AuditEntityType] = Query(None),
    entity_id: Optional[int] = Query(None),
    action: Optional[AuditAction] = Query(None),
    changed_by: Optional[str] = Query(None),
    start_date: Optional[date] = Query(None, description="Start date (YYYY-MM-DD)"),
    end_date: Optional[date] = Query(None, description="End date (YYYY-MM-DD)"),
    limit: int = Query(100, ge=1, le=500, description="Max entries to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
    db: AsyncSession = Depends(get_db)
):
    """Audit entries, most recent first"""
    filter_params = AuditLogFilter(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        changed_by=changed_by,
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
    )
    entries = await AuditLogRepository(db).list_entries(filter_params)
    return success_response([_dump(e) for e in entries])


@router.get("/audit/{entity_type}/{entity_id}")
async def get_entity_history(
    entity_type: AuditEntityType,
    entity_id: int,
    db: AsyncSession = Depends(get_db)
):
    """Full history of one rule, holiday or extension, oldest first"""
    entries = await AuditLogRepository(db).entity_history(entity_type, entity_id)
    return success_response([_dump(e) for e in entries])


# ==================== HOLIDAYS ====================

@router.get("/holidays/{year}")
async def list_holidays(year: int, db: AsyncSession = Depends(get_db)):
    """Holiday records observed in a year"""
    holidays = await HolidayCalendar(db).list_holidays(year)
    return success_response([_dump(h) for h in holidays])


@router.get("/holidays/{year}/dates")
async def get_holiday_dates(year: int, db: AsyncSession = Depends(get_db)):
    """Concrete holiday dates in a year, ascending"""
    dates = await HolidayCalendar(db).get_holidays(year)
    return success_response([d.isoformat() for d in dates])


@router.post("/holidays", status_code=201)
async def add_holiday(
    request: CreateHolidayRequest,
    db: AsyncSession = Depends(get_db)
):
    data = HolidayCreate(**request.model_dump(exclude={"changed_by"}))
    holiday = await HolidayCalendar(db).add_holiday(data, request.changed_by)
    return success_response(_dump(holiday))


@router.delete("/holidays/{holiday_id}")
async def remove_holiday(
    holiday_id: int,
    changed_by: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    await HolidayCalendar(db).remove_holiday(holiday_id, changed_by)
    return success_response({"id": holiday_id, "removed": True})


# ==================== EXTENSIONS ====================

@router.post("/extensions", status_code=201)
async def grant_extension(
    request: ExtensionGrant,
    db: AsyncSession = Depends(get_db)
):
    extension = await ExtensionRegistry(db).grant_extension(request)
    return success_response(_dump(extension))


@router.get("/extensions/client/{client_id}")
async def list_client_extensions(
    client_id: int,
    include_revoked: bool = Query(True),
    db: AsyncSession = Depends(get_db)
):
    extensions = await ExtensionRegistry(db).list_client_extensions(client_id, include_revoked)
    return success_response([_dump(e) for e in extensions])


@router.get("/extensions/active")
async def get_active_extension(
    client_id: int = Query(...),
    tax_type: TaxType = Query(...),
    tax_year: Optional[int] = Query(None),
    as_of: Optional[date] = Query(None, description="Defaults to today"),
    db: AsyncSession = Depends(get_db)
):
    """The extension a calculation on as_of would apply, or null"""
    extension = await ExtensionRegistry(db).get_active_extension(client_id, tax_type, tax_year, as_of)
    return success_response(_dump(extension) if extension else None)


@router.get("/extensions/{extension_id}")
async def get_extension(extension_id: int, db: AsyncSession = Depends(get_db)):
    extension = await ExtensionRegistry(db).get_extension(extension_id)
    return success_response(_dump(extension))


@router.post("/extensions/{extension_id}/revoke")
async def revoke_extension(
    extension_id: int,
    request: RevokeExtensionRequest,
    db: AsyncSession = Depends(get_db)
):
    extension = await ExtensionRegistry(db).revoke_extension(extension_id, request.revoked_by, request.reason)
    return success_response(_dump(extension))


# ==================== SINGLE RULE ====================

@router.get("/{rule_id}")
async def get_rule(rule_id: int, db: AsyncSession = Depends(get_db)):
    rule = await RuleRepository(db).get_rule(rule_id)
    return success_response(_dump(rule))


@router.put("/{rule_id}")
async def update_rule(
    rule_id: int,
    request: UpdateRuleRequest,
    db: AsyncSession = Depends(get_db)
):
    """Partial update; send expected_version to guard against concurrent edits"""
    data = DeadlineRuleUpdate(**request.model_dump(exclude_unset=True, exclude={"changed_by"}))
    rule = await RuleRepository(db).update_rule(rule_id, data, request.changed_by)
    return success_response(_dump(rule))


@router.delete("/{rule_id}")
async def delete_rule(
    rule_id: int,
    changed_by: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db)
):
    """Only rules with no audit history can be deleted; retire others instead"""
    await RuleRepository(db).delete_rule(rule_id, changed_by)
    return success_response({"id": rule_id, "deleted": True})


@router.post("/{rule_id}/activate")
async def activate_rule(
    rule_id: int,
    request: RuleStateRequest,
    db: AsyncSession = Depends(get_db)
):
    rule = await RuleRepository(db).activate_rule(rule_id, request.changed_by, request.expected_version)
    return success_response(_dump(rule))


@router.post("/{rule_id}/deactivate")
async def deactivate_rule(
    rule_id: int,
    request: RuleStateRequest,
    db: AsyncSession = Depends(get_db)
):
    rule = await RuleRepository(db).deactivate_rule(rule_id, request.changed_by, request.expected_version)
    return success_response(_dump(rule))
