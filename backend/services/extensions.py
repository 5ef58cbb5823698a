"""
Client Deadline Extension Registry

Business logic for:
- Granting per-client extensions (optionally scoped to one tax year)
- Revoking extensions (idempotent, never deletes)
- Resolving the single extension that applies to a calculation
"""

from datetime import date, datetime
from typing import List, Optional, Iterable
import logging

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.deadline_models import (
    ClientDeadlineExtensionDB, TaxType, AuditEntityType, AuditAction, utc_now, as_utc,
)
from database.transaction import atomic
from services.holidays import validate_year
from utils.errors import (
    ValidationError, ConflictError, NotFoundError,
    require_text, require_present, require_non_negative,
)
from services.audit import AuditLogRepository

logger = logging.getLogger(__name__)


# ==================== PYDANTIC MODELS ====================

class ExtensionGrant(BaseModel):
    """Request to grant a client deadline extension"""
    client_id: Optional[int] = None
    tax_type: Optional[TaxType] = None
    tax_year: Optional[int] = None
    extension_days: Optional[int] = None
    reason: Optional[str] = None
    approved_by: Optional[str] = None
    expiry_date: Optional[date] = None
    granted_at: Optional[datetime] = None


class ExtensionRevoke(BaseModel):
    """Request to revoke an extension"""
    reason: Optional[str] = None


class ClientDeadlineExtension(BaseModel):
    """Client extension response model"""
    id: int
    client_id: int
    tax_type: str
    tax_year: Optional[int] = None
    extension_days: int
    reason: str
    approved_by: str
    granted_at: str
    expiry_date: Optional[date] = None
    revoked: bool
    revoked_at: Optional[str] = None
    revoked_by: Optional[str] = None
    version: int


# ==================== HELPER FUNCTIONS ====================

def _db_to_extension(db_obj: ClientDeadlineExtensionDB) -> ClientDeadlineExtension:
    return ClientDeadlineExtension(
        id=db_obj.id,
        client_id=db_obj.client_id,
        tax_type=db_obj.tax_type.value,
        tax_year=db_obj.tax_year,
        extension_days=db_obj.extension_days,
        reason=db_obj.reason,
        approved_by=db_obj.approved_by,
        granted_at=as_utc(db_obj.granted_at).isoformat(),
        expiry_date=db_obj.expiry_date,
        revoked=db_obj.revoked,
        revoked_at=as_utc(db_obj.revoked_at).isoformat() if db_obj.revoked_at else None,
        revoked_by=db_obj.revoked_by,
        version=db_obj.version,
    )


def _snapshot(db_obj: ClientDeadlineExtensionDB) -> dict:
    return {
        "id": db_obj.id,
        "client_id": db_obj.client_id,
        "tax_type": db_obj.tax_type,
        "tax_year": db_obj.tax_year,
        "extension_days": db_obj.extension_days,
        "granted_at": as_utc(db_obj.granted_at),
        "expiry_date": db_obj.expiry_date,
    }


def is_in_window(extension: ClientDeadlineExtensionDB, as_of: date) -> bool:
    """granted_at <= as_of and (no expiry or as_of <= expiry_date), by calendar date"""
    if extension.revoked:
        return False
    if as_utc(extension.granted_at).date() > as_of:
        return False
    return extension.expiry_date is None or as_of <= extension.expiry_date


def select_active_extension(
    extensions: Iterable[ClientDeadlineExtensionDB],
    tax_year: Optional[int],
    as_of: date,
) -> Optional[ClientDeadlineExtensionDB]:
    """
    Pick the one extension that applies, or None.

    An extension for exactly tax_year beats a year-agnostic one; an extension
    for a different year never applies. Ties go to the most recently granted.
    """
    candidates = [
        e for e in extensions
        if is_in_window(e, as_of) and (e.tax_year is None or e.tax_year == tax_year)
    ]
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda e: (e.tax_year is not None, as_utc(e.granted_at), e.id),
    )


# ==================== REGISTRY CLASS ====================

class ExtensionRegistry:
    """Service for client deadline extensions"""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.audit = AuditLogRepository(session)

    # ==================== GRANT / REVOKE ====================

    async def grant_extension(self, data: ExtensionGrant) -> ClientDeadlineExtension:
        """Record an approved extension and its GRANTED audit entry"""
        require_present(data.client_id, "client_id")
        if data.client_id <= 0:
            raise ValidationError("client_id must be a positive integer", field="client_id")
        require_present(data.tax_type, "tax_type")
        extension_days = require_non_negative(data.extension_days, "extension_days")
        reason = require_text(data.reason, "reason")
        approved_by = require_text(data.approved_by, "approved_by")
        if data.tax_year is not None:
            try:
                validate_year(data.tax_year)
            except ValidationError as e:
                raise ValidationError(e.message, field="tax_year") from e

        granted_at = as_utc(data.granted_at) or utc_now()
        if data.expiry_date is not None and data.expiry_date < granted_at.date():
            raise ValidationError(
                f"expiry_date ({data.expiry_date.isoformat()}) cannot be before the grant date "
                f"({granted_at.date().isoformat()})",
                field="expiry_date",
            )

        db_extension = ClientDeadlineExtensionDB(
            client_id=data.client_id,
            tax_type=data.tax_type,
            tax_year=data.tax_year,
            extension_days=extension_days,
            reason=reason,
            approved_by=approved_by,
            granted_at=granted_at,
            expiry_date=data.expiry_date,
            revoked=False,
        )

        async with atomic(self.session, "grant deadline extension"):
            self.session.add(db_extension)
            await self.session.flush()
            self.audit.append(
                AuditEntityType.EXTENSION, db_extension.id, AuditAction.GRANTED, approved_by,
                new_value=_snapshot(db_extension),
                reason=reason,
            )

        logger.info(
            f"Granted {extension_days}-day {data.tax_type.value} extension {db_extension.id} "
            f"to client {data.client_id}"
        )
        return _db_to_extension(db_extension)

    async def revoke_extension(
        self,
        extension_id: int,
        revoked_by: str,
        reason: Optional[str] = None,
    ) -> ClientDeadlineExtension:
        """
        Mark an extension revoked.

        Revoking an already revoked extension returns it unchanged and adds
        no audit entry. Two concurrent revocations both succeed; only the
        first is recorded.
        """
        revoked_by = require_text(revoked_by, "revoked_by")
        db_extension = await self.get_db(extension_id)
        if not db_extension:
            raise NotFoundError(f"Deadline extension {extension_id} not found")
        if db_extension.revoked:
            return _db_to_extension(db_extension)

        try:
            async with atomic(self.session, f"revoke deadline extension {extension_id}"):
                db_extension.revoked = True
                db_extension.revoked_at = utc_now()
                db_extension.revoked_by = revoked_by
                self.audit.append(
                    AuditEntityType.EXTENSION, extension_id, AuditAction.REVOKED, revoked_by,
                    field_name="revoked", old_value=False, new_value=True,
                    reason=reason,
                )
        except ConflictError:
            current = await self.get_db(extension_id)
            if current is not None and current.revoked:
                return _db_to_extension(current)
            raise

        logger.info(f"Revoked deadline extension {extension_id}")
        return _db_to_extension(db_extension)

    # ==================== READ ====================

    async def get_db(self, extension_id: int) -> Optional[ClientDeadlineExtensionDB]:
        result = await self.session.execute(
            select(ClientDeadlineExtensionDB).where(ClientDeadlineExtensionDB.id == extension_id)
        )
        return result.scalar_one_or_none()

    async def get_extension(self, extension_id: int) -> ClientDeadlineExtension:
        db_extension = await self.get_db(extension_id)
        if not db_extension:
            raise NotFoundError(f"Deadline extension {extension_id} not found")
        return _db_to_extension(db_extension)

    async def list_client_extensions(
        self,
        client_id: int,
        include_revoked: bool = True,
    ) -> List[ClientDeadlineExtension]:
        """All extensions for a client, most recently granted first"""
        query = select(ClientDeadlineExtensionDB).where(ClientDeadlineExtensionDB.client_id == client_id)
        if not include_revoked:
            query = query.where(ClientDeadlineExtensionDB.revoked.is_(False))
        query = query.order_by(ClientDeadlineExtensionDB.granted_at.desc(), ClientDeadlineExtensionDB.id.desc())

        result = await self.session.execute(query)
        return [_db_to_extension(e) for e in result.scalars().all()]

    async def find_active_extension_db(
        self,
        client_id: int,
        tax_type: TaxType,
        tax_year: Optional[int],
        as_of: date,
    ) -> Optional[ClientDeadlineExtensionDB]:
        result = await self.session.execute(
            select(ClientDeadlineExtensionDB).where(
                ClientDeadlineExtensionDB.client_id == client_id,
                ClientDeadlineExtensionDB.tax_type == tax_type,
                ClientDeadlineExtensionDB.revoked.is_(False),
            )
        )
        return select_active_extension(result.scalars().all(), tax_year, as_of)

    async def get_active_extension(
        self,
        client_id: int,
        tax_type: TaxType,
        tax_year: Optional[int] = None,
        as_of: Optional[date] = None,
    ) -> Optional[ClientDeadlineExtension]:
        """The extension that would apply to a calculation on as_of (today by default)"""
        db_extension = await self.find_active_extension_db(
            client_id, tax_type, tax_year, as_of or date.today()
        )
        return _db_to_extension(db_extension) if db_extension else None
