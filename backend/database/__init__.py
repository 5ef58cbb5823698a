from .connection import get_db, engine, AsyncSessionLocal, init_db, create_tables, Base

# Import deadline engine models to ensure they are registered with Base
from .deadline_models import (
    DeadlineRuleDB, PublicHolidayDB, ClientDeadlineExtensionDB, DeadlineAuditLogDB,
    TaxType, TriggerType, AuditEntityType, AuditAction,
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'create_tables', 'Base',
    # Deadline engine models
    'DeadlineRuleDB', 'PublicHolidayDB', 'ClientDeadlineExtensionDB', 'DeadlineAuditLogDB',
    'TaxType', 'TriggerType', 'AuditEntityType', 'AuditAction',
]
