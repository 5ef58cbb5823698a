"""
Deadline Configuration Audit Log

Tracks every change to deadline configuration for compliance and traceability:
- Deadline rules (create, update, activate, deactivate)
- Public holidays (add, remove)
- Client extensions (grant, revoke)

Storage: deadline_audit_logs table, written in the same session (and so the
same transaction) as the change it describes. The repository below exposes
append and read operations only; the ORM model itself refuses UPDATE and
DELETE flushes.
"""

import json
from datetime import datetime, date, time, timezone
from enum import Enum
from typing import List, Optional, Dict, Any
import logging

from pydantic import BaseModel
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from database.deadline_models import (
    DeadlineAuditLogDB, AuditEntityType, AuditAction, utc_now,
)

logger = logging.getLogger(__name__)


# ==================== MODELS ====================

class AuditLogEntry(BaseModel):
    """Audit log entry model"""
    id: int
    entity_type: str
    entity_id: int
    action: str
    field_name: Optional[str] = None
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    changed_by: str
    changed_at: str
    reason: Optional[str] = None


class AuditLogFilter(BaseModel):
    """Filter for querying audit logs"""
    entity_type: Optional[AuditEntityType] = None
    entity_id: Optional[int] = None
    action: Optional[AuditAction] = None
    changed_by: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    limit: int = 100
    offset: int = 0


# ==================== SERIALIZATION ====================

def encode_value(value: Any) -> Optional[str]:
    """
    Render a field value for the old_value/new_value columns.

    Dates become ISO strings, enums their value, dicts a JSON document.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        return json.dumps(value, default=_json_default, sort_keys=True)
    return _json_default(value)


def _json_default(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return str(value.value)
    return str(value)


def _db_to_entry(db_obj: DeadlineAuditLogDB) -> AuditLogEntry:
    return AuditLogEntry(
        id=db_obj.id,
        entity_type=db_obj.entity_type.value,
        entity_id=db_obj.entity_id,
        action=db_obj.action.value,
        field_name=db_obj.field_name,
        old_value=db_obj.old_value,
        new_value=db_obj.new_value,
        changed_by=db_obj.changed_by,
        changed_at=db_obj.changed_at.isoformat() if db_obj.changed_at else "",
        reason=db_obj.reason,
    )


# ==================== REPOSITORY ====================

class AuditLogRepository:
    """
    Append-only access to deadline_audit_logs.

    append() only adds rows to the caller's session; the caller commits them
    together with the change being audited.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    def append(
        self,
        entity_type: AuditEntityType,
        entity_id: int,
        action: AuditAction,
        changed_by: str,
        field_name: Optional[str] = None,
        old_value: Any = None,
        new_value: Any = None,
        reason: Optional[str] = None,
    ) -> DeadlineAuditLogDB:
        """Stage one audit entry in the current transaction."""
        entry = DeadlineAuditLogDB(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            field_name=field_name,
            old_value=encode_value(old_value),
            new_value=encode_value(new_value),
            changed_by=changed_by,
            changed_at=utc_now(),
            reason=reason,
        )
        self.session.add(entry)

        logger.info(
            f"AUDIT: {action.value} on {entity_type.value}/{entity_id}"
            f"{f' field={field_name}' if field_name else ''}"
            f" by {changed_by}",
            extra={"audit": {
                "entity_type": entity_type.value,
                "entity_id": entity_id,
                "action": action.value,
                "field_name": field_name,
                "changed_by": changed_by,
            }},
        )
        return entry

    def append_changes(
        self,
        entity_type: AuditEntityType,
        entity_id: int,
        action: AuditAction,
        changed_by: str,
        before: Dict[str, Any],
        after: Dict[str, Any],
        reason: Optional[str] = None,
    ) -> List[DeadlineAuditLogDB]:
        """Stage one entry per field whose value differs between two snapshots."""
        entries = []
        for field_name in sorted(after):
            if before.get(field_name) != after[field_name]:
                entries.append(self.append(
                    entity_type, entity_id, action, changed_by,
                    field_name=field_name,
                    old_value=before.get(field_name),
                    new_value=after[field_name],
                    reason=reason,
                ))
        return entries

    async def has_entries_for(self, entity_type: AuditEntityType, entity_id: int) -> bool:
        result = await self.session.execute(
            select(func.count(DeadlineAuditLogDB.id)).where(
                DeadlineAuditLogDB.entity_type == entity_type,
                DeadlineAuditLogDB.entity_id == entity_id,
            )
        )
        return (result.scalar() or 0) > 0

    async def entity_history(self, entity_type: AuditEntityType, entity_id: int) -> List[AuditLogEntry]:
        """All entries for one entity, oldest first."""
        result = await self.session.execute(
            select(DeadlineAuditLogDB)
            .where(
                DeadlineAuditLogDB.entity_type == entity_type,
                DeadlineAuditLogDB.entity_id == entity_id,
            )
            .order_by(DeadlineAuditLogDB.id)
        )
        return [_db_to_entry(row) for row in result.scalars().all()]

    async def list_entries(self, filter_params: Optional[AuditLogFilter] = None) -> List[AuditLogEntry]:
        """Entries matching the filter, most recent first."""
        if filter_params is None:
            filter_params = AuditLogFilter()

        query = select(DeadlineAuditLogDB)

        if filter_params.entity_type:
            query = query.where(DeadlineAuditLogDB.entity_type == filter_params.entity_type)
        if filter_params.entity_id is not None:
            query = query.where(DeadlineAuditLogDB.entity_id == filter_params.entity_id)
        if filter_params.action:
            query = query.where(DeadlineAuditLogDB.action == filter_params.action)
        if filter_params.changed_by:
            query = query.where(DeadlineAuditLogDB.changed_by == filter_params.changed_by)
        if filter_params.start_date:
            query = query.where(
                DeadlineAuditLogDB.changed_at >= datetime.combine(filter_params.start_date, time.min, tzinfo=timezone.utc)
            )
        if filter_params.end_date:
            query = query.where(
                DeadlineAuditLogDB.changed_at <= datetime.combine(filter_params.end_date, time.max, tzinfo=timezone.utc)
            )

        query = (
            query.order_by(DeadlineAuditLogDB.id.desc())
            .offset(filter_params.offset)
            .limit(filter_params.limit)
        )

        result = await self.session.execute(query)
        return [_db_to_entry(row) for row in result.scalars().all()]
