from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
import logging

from board_models import RequestContext
from core.db import transaction
from models.base import utcnow
from models.task import TaskItem
from tenant_scope import load_cycle, load_open_cycle, load_membership
from utils.audit import log_audit_event
from utils.exceptions import ValidationFailed, NotFound

logger = logging.getLogger(__name__)


def _clean_text(text: str) -> str:
    text = (text or "").strip()
    if not text:
        raise ValidationFailed(
            code="TASK_TEXT_REQUIRED",
            message="태스크 내용을 입력하세요.",
            dev_message="Empty task text",
        )
    return text


class TaskStore:
    """(사이클, 서비스) 단위 체크리스트. 정렬은 created_at 오름차순"""

    def __init__(self, db: AsyncSession, ctx: RequestContext):
        self.db = db
        self.ctx = ctx

    async def list_tasks(self, cycle_id: int, service_id: int) -> List[TaskItem]:
        await load_cycle(self.db, self.ctx, cycle_id)
        await load_membership(self.db, cycle_id, service_id)
        return await self._tasks(cycle_id, service_id)

    async def _tasks(self, cycle_id: int, service_id: int) -> List[TaskItem]:
        result = await self.db.execute(
            select(TaskItem)
            .where(TaskItem.cycle_id == cycle_id, TaskItem.service_id == service_id)
            .order_by(TaskItem.created_at, TaskItem.id)
        )
        return result.scalars().all()

    async def _load_task(self, cycle_id: int, service_id: int, task_id: int) -> TaskItem:
        result = await self.db.execute(
            select(TaskItem).where(
                TaskItem.id == task_id, TaskItem.cycle_id == cycle_id, TaskItem.service_id == service_id
            )
        )
        task = result.scalars().first()
        if task is None:
            raise NotFound(
                code="TASK_NOT_FOUND",
                message="태스크를 찾을 수 없습니다.",
                dev_message=f"TaskItem(id={task_id}) not found for cycle {cycle_id} service {service_id}",
            )
        return task

    async def add_task(self, cycle_id: int, service_id: int, text: str) -> TaskItem:
        text = _clean_text(text)
        async with transaction(self.db):
            await load_open_cycle(self.db, self.ctx, cycle_id)
            await load_membership(self.db, cycle_id, service_id)
            task = TaskItem(cycle_id=cycle_id, service_id=service_id, text=text, completed=False, created_at=utcnow())
            self.db.add(task)
            await self.db.flush()
            await log_audit_event(self.db, self.ctx, "task_add", f"service {service_id} task {task.id}", cycle_id=cycle_id)
        return task

    async def remove_task(self, cycle_id: int, service_id: int, task_id: int) -> None:
        async with transaction(self.db):
            await load_open_cycle(self.db, self.ctx, cycle_id)
            task = await self._load_task(cycle_id, service_id, task_id)
            await self.db.delete(task)
            await self.db.flush()
            await log_audit_event(self.db, self.ctx, "task_remove", f"service {service_id} task {task_id}", cycle_id=cycle_id)

    async def update_task(
        self, cycle_id: int, service_id: int, task_id: int,
        text: Optional[str] = None, completed: Optional[bool] = None,
    ) -> TaskItem:
        # 내용과 완료 여부를 한 트랜잭션에서 함께 반영
        if text is None and completed is None:
            raise ValidationFailed(
                code="TASK_UPDATE_EMPTY",
                message="text 또는 completed 중 하나는 필요합니다.",
                dev_message=f"No fields to update for TaskItem(id={task_id})",
            )
        if text is not None:
            text = _clean_text(text)
        async with transaction(self.db):
            await load_open_cycle(self.db, self.ctx, cycle_id)
            task = await self._load_task(cycle_id, service_id, task_id)
            if text is not None:
                task.text = text
                await log_audit_event(self.db, self.ctx, "task_update", f"service {service_id} task {task_id}", cycle_id=cycle_id)
            if completed is not None:
                task.completed = bool(completed)
                await log_audit_event(
                    self.db, self.ctx, "task_complete" if completed else "task_reopen",
                    f"service {service_id} task {task_id}", cycle_id=cycle_id,
                )
            await self.db.flush()
        return task

    async def update_task_text(self, cycle_id: int, service_id: int, task_id: int, text: str) -> TaskItem:
        return await self.update_task(cycle_id, service_id, task_id, text=text)

    async def set_task_completion(self, cycle_id: int, service_id: int, task_id: int, completed: bool) -> TaskItem:
        return await self.update_task(cycle_id, service_id, task_id, completed=completed)

    async def copy_tasks(self, service_id: int, from_cycle_id: int, to_cycle_id: int) -> List[TaskItem]:
        # 원본 태스크를 새 태스크로 다시 추가 (id는 보존하지 않음)
        async with transaction(self.db):
            await load_cycle(self.db, self.ctx, from_cycle_id)
            await load_open_cycle(self.db, self.ctx, to_cycle_id)
            await load_membership(self.db, to_cycle_id, service_id)
            source = await self._tasks(from_cycle_id, service_id)
            copied = []
            for task in source:
                item = TaskItem(cycle_id=to_cycle_id, service_id=service_id, text=task.text, completed=False, created_at=utcnow())
                self.db.add(item)
                copied.append(item)
            await self.db.flush()
            await log_audit_event(
                self.db, self.ctx, "task_copy",
                f"service {service_id}: {len(copied)} tasks from cycle {from_cycle_id}",
                cycle_id=to_cycle_id,
            )
        logger.info(f"[task] copied {len(copied)} tasks for service {service_id} into cycle {to_cycle_id}")
        return copied
