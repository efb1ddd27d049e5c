"""Audit Service: append-only change history for requirement nodes.

Entries are written through the caller's session so they commit or roll
back together with the mutation they describe.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tracematrix.core.config import get_settings
from tracematrix.core.constants import ChangeType
from tracematrix.core.exceptions import StorageError
from tracematrix.core.logging import get_logger
from tracematrix.database.config import get_async_session
from tracematrix.database.models import RequirementChangeDB, utcnow

logger = get_logger(__name__)


class AuditService:
    """Records before/after snapshots of requirement nodes."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        changed_by: Optional[str] = None,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock or utcnow
        self.changed_by = changed_by or get_settings().importing.changed_by

    # =========================================================================
    # Recording
    # =========================================================================

    async def record(
        self,
        session: AsyncSession,
        project_id: str,
        requirement_id: str,
        requirement_key: str,
        change_type: ChangeType,
        old_values: Optional[dict[str, Any]] = None,
        new_values: Optional[dict[str, Any]] = None,
        reason: Optional[str] = None,
    ) -> RequirementChangeDB:
        """Append one audit entry inside the caller's transaction.

        Args:
            session: Session owning the enclosing transaction
            project_id: Owning project
            requirement_id: Node the change applies to
            requirement_key: Human-facing key of the node
            change_type: created, updated or deleted
            old_values: Snapshot before the change (None on create)
            new_values: Snapshot after the change (None on delete)
            reason: Optional free-text reason

        Returns:
            The pending audit row
        """
        entry = RequirementChangeDB(
            project_id=project_id,
            requirement_id=requirement_id,
            requirement_key=requirement_key,
            change_type=change_type,
            old_values=old_values,
            new_values=new_values,
            changed_by=self.changed_by,
            change_reason=reason,
            created_at=self._clock(),
        )
        session.add(entry)
        try:
            await session.flush()
        except SQLAlchemyError as e:
            raise StorageError(
                f"Failed to write audit entry: {e}",
                entity_key=requirement_key,
                stage="audit",
            ) from e

        logger.debug(
            "Audit entry recorded",
            requirement_key=requirement_key,
            change_type=ChangeType(change_type).value,
        )
        return entry

    # =========================================================================
    # History
    # =========================================================================

    async def history(self, requirement_id: str) -> Sequence[RequirementChangeDB]:
        """All entries for one node, oldest first."""
        async with get_async_session(self._session_factory) as session:
            result = await session.execute(
                select(RequirementChangeDB)
                .where(RequirementChangeDB.requirement_id == requirement_id)
                .order_by(RequirementChangeDB.id)
            )
            return result.scalars().all()

    async def project_history(
        self,
        project_id: str,
        change_type: Optional[ChangeType] = None,
        limit: Optional[int] = None,
    ) -> Sequence[RequirementChangeDB]:
        """Entries for every node of a project, oldest first."""
        async with get_async_session(self._session_factory) as session:
            query = (
                select(RequirementChangeDB)
                .where(RequirementChangeDB.project_id == project_id)
                .order_by(RequirementChangeDB.id)
            )
            if change_type is not None:
                query = query.where(RequirementChangeDB.change_type == change_type)
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return result.scalars().all()
