"""Base repository with organization-scoped queries.

All repositories inherit from this. Provides insert/read/update plus a
compare-and-set primitive used wherever two writers may race (execution
status transitions, step claims, escalation levels).
"""

from typing import Any, Generic, Optional, Sequence, Type, TypeVar

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """Generic persistence helper for any SQLAlchemy model.

    Usage:
        class TaskRepository(BaseRepository[WorkflowTask]):
            def __init__(self, db: AsyncSession):
                super().__init__(WorkflowTask, db)
    """

    def __init__(self, model: Type[ModelType], db: AsyncSession):
        self.model = model
        self.db = db

    # ─── Read ──────────────────────────────────────────────

    async def find_by_id(self, id: Any) -> Optional[ModelType]:
        """Get a single record by ID, refreshed from the database."""
        query = (
            select(self.model)
            .where(self.model.id == id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_by_org_and_status(
        self,
        organization_id: str,
        status: str,
        limit: int = 100,
    ) -> Sequence[ModelType]:
        """List records for one organization in one status, oldest first."""
        query = (
            select(self.model)
            .where(
                self.model.organization_id == organization_id,
                self.model.status == status,
            )
            .order_by(self.model.created_at.asc())
            .limit(limit)
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    # ─── Create ────────────────────────────────────────────

    async def insert(self, data: dict[str, Any]) -> ModelType:
        """Create a new record and flush it so generated keys are populated."""
        instance = self.model(**data)
        self.db.add(instance)
        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    # ─── Update ────────────────────────────────────────────

    async def update(self, id: Any, data: dict[str, Any]) -> Optional[ModelType]:
        """Update a record by ID.

        Unlike the compare-and-set path, None values are written as given.

        Returns:
            Updated model instance or None if not found
        """
        instance = await self.find_by_id(id)
        if not instance:
            return None

        for key, value in data.items():
            if hasattr(instance, key):
                setattr(instance, key, value)

        await self.db.flush()
        await self.db.refresh(instance)
        return instance

    async def compare_and_set(
        self,
        id: Any,
        expected: dict[str, Any],
        values: dict[str, Any],
    ) -> bool:
        """Apply ``values`` only if every column in ``expected`` still matches.

        Returns:
            True if exactly this caller won the update
        """
        conditions = [self.model.id == id]
        for field, value in expected.items():
            col = getattr(self.model, field)
            if value is None:
                conditions.append(col.is_(None))
            elif isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(col.in_(list(value)))
            else:
                conditions.append(col == value)

        stmt = (
            update(self.model)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1


class TrackedRepository(BaseRepository[ModelType]):
    """Repository for entities the SLA tracker watches.

    Subclasses name the column holding the deadline and the status in which
    the entity is still open.
    """

    due_column: str = "due_date"
    open_status: str = "pending"

    async def find_open_overdue(
        self,
        now,
        limit: int = 100,
        after: Optional[tuple] = None,
    ) -> Sequence[ModelType]:
        """Open entities whose deadline is strictly before ``now``.

        Ordered by (deadline, id). Pass the (deadline, id) of the last row
        of the previous page as ``after`` to read the next page.
        """
        due = getattr(self.model, self.due_column)
        query = select(self.model).where(
            self.model.status == self.open_status,
            due.is_not(None),
            due < now,
        )
        if after is not None:
            last_due, last_id = after
            query = query.where(
                or_(due > last_due, and_(due == last_due, self.model.id > last_id))
            )
        query = (
            query
            .order_by(due.asc(), self.model.id.asc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalars().all()

    async def advance_escalation_level(self, id: Any, from_level: int, at) -> bool:
        """Move ``escalation_level`` from ``from_level`` to ``from_level + 1``.

        Only one caller can win for a given level; losers get False.
        """
        return await self.compare_and_set(
            id,
            expected={"escalation_level": from_level},
            values={"escalation_level": from_level + 1, "last_escalated_at": at},
        )
