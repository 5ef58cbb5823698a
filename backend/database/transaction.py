"""Transaction boundary for configuration mutations.

A mutation and its audit entries are staged on the same session and
committed once by ``atomic``. Any failure rolls the whole unit back so no
reader ever observes a change without its audit trail, or the reverse.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from utils.errors import ConflictError, ValidationError

logger = logging.getLogger(__name__)


@asynccontextmanager
async def atomic(session: AsyncSession, description: str) -> AsyncIterator[AsyncSession]:
    """
    Commit everything staged inside the block, or nothing.

    Usage:
        async with atomic(session, "update rule 7"):
            rule.days_from_trigger = 30
            audit.append(...)

    Raises:
        ConflictError: another writer updated the same row first (version mismatch)
        ValidationError: the database rejected the row (constraint violation)
    """
    try:
        yield session
        await session.commit()
    except StaleDataError as e:
        await session.rollback()
        logger.warning(f"Concurrent modification during {description}: {e}")
        raise ConflictError(
            f"Concurrent modification detected during {description}; re-read and retry"
        ) from e
    except IntegrityError as e:
        await session.rollback()
        logger.warning(f"Constraint violation during {description}: {e.orig}")
        raise ValidationError(f"Rejected by database constraints during {description}") from e
    except BaseException:
        await session.rollback()
        logger.debug(f"Rolled back {description}")
        raise
