"""Task and approval-request persistence."""

from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.constants import WorkItemStatus
from db.models.work_items import ApprovalRequest, WorkflowTask
from services.base import TrackedRepository


class TaskRepository(TrackedRepository[WorkflowTask]):
    due_column = "due_date"
    open_status = WorkItemStatus.PENDING.value

    def __init__(self, db: AsyncSession):
        super().__init__(WorkflowTask, db)

    async def create(
        self,
        organization_id: str,
        name: str,
        assigned_role: Optional[str],
        started_at: datetime,
        due_date: datetime,
        context: dict,
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> WorkflowTask:
        return await self.insert(
            {
                "organization_id": organization_id,
                "execution_id": execution_id,
                "step_id": step_id,
                "name": name,
                "assigned_role": assigned_role,
                "status": WorkItemStatus.PENDING.value,
                "context": context,
                "started_at": started_at,
                "due_date": due_date,
            }
        )


class ApprovalRepository(TrackedRepository[ApprovalRequest]):
    due_column = "due_date"
    open_status = WorkItemStatus.PENDING.value

    def __init__(self, db: AsyncSession):
        super().__init__(ApprovalRequest, db)

    async def create(
        self,
        organization_id: str,
        title: str,
        assigned_role: Optional[str],
        started_at: datetime,
        due_date: datetime,
        context: dict,
        execution_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> ApprovalRequest:
        return await self.insert(
            {
                "organization_id": organization_id,
                "execution_id": execution_id,
                "step_id": step_id,
                "title": title,
                "assigned_role": assigned_role,
                "status": WorkItemStatus.PENDING.value,
                "context": context,
                "started_at": started_at,
                "due_date": due_date,
            }
        )
