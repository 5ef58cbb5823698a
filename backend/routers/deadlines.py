"""
Deadline Calculation Router

Consumer API used by filing, compliance and notification services to
compute due dates. Read-only.
"""

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from database.deadline_models import TaxType, TriggerType, AuditEntityType, AuditAction
from middleware.internal_auth import require_internal_service
from services.deadline_calculator import DeadlineCalculator, DeadlineRequest
from utils.errors import success_response

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/deadlines",
    tags=["Deadlines"],
    dependencies=[Depends(require_internal_service)],
)


@router.post("/calculate")
async def calculate_deadline(
    request: DeadlineRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Calculate the filing deadline for a tax type and trigger date.

    Returns the deadline together with the rule, extension and adjustments
    that produced it. tax_year selects a year-scoped client extension and
    defaults to the trigger date's year.
    """
    calculation = await DeadlineCalculator(db).explain_deadline(
        request.tax_type,
        request.trigger_date,
        client_id=request.client_id,
        tax_year=request.tax_year,
    )
    return success_response(calculation.model_dump(mode="json"))


@router.get("/reference-data")
async def get_reference_data():
    """Enumerations used by the deadline API"""
    return success_response({
        "tax_types": [t.value for t in TaxType],
        "trigger_types": [t.value for t in TriggerType],
        "audit_entity_types": [t.value for t in AuditEntityType],
        "audit_actions": [a.value for a in AuditAction],
    })
