from typing import Dict, List, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import or_, func

from board_models import (
    Board, BoardEntry, DependencyEdge, DeploymentState, DeploymentView,
    RequestContext, ServiceDependencyStatus, TaskView,
)
from cycle_store import CycleStore
from models.cycle import CycleService, DeploymentCycle
from models.dependency import Dependency
from models.service import Service
from models.service_deployment import ServiceDeployment
from models.task import TaskItem
from tenant_scope import load_cycle


class DeploymentViews:
    """보드/히스토리 화면이 다시 그릴 때 쓰는 비정규화 조회. 태스크 목록은 조회 시점에 합침"""

    def __init__(self, db: AsyncSession, ctx: RequestContext):
        self.db = db
        self.ctx = ctx

    def _base_query(self):
        return (
            select(ServiceDeployment, Service, DeploymentCycle, CycleService)
            .join(Service, Service.id == ServiceDeployment.service_id)
            .join(DeploymentCycle, DeploymentCycle.id == ServiceDeployment.cycle_id)
            .join(
                CycleService,
                (CycleService.cycle_id == ServiceDeployment.cycle_id)
                & (CycleService.service_id == ServiceDeployment.service_id),
            )
            .where(DeploymentCycle.tenant_id == self.ctx.tenant_id)
        )

    async def _tasks_by_pair(self, cycle_ids) -> Dict[Tuple[int, int], List[TaskView]]:
        tasks: Dict[Tuple[int, int], List[TaskView]] = {}
        if not cycle_ids:
            return tasks
        result = await self.db.execute(
            select(TaskItem).where(TaskItem.cycle_id.in_(set(cycle_ids))).order_by(TaskItem.created_at, TaskItem.id)
        )
        for t in result.scalars().all():
            tasks.setdefault((t.cycle_id, t.service_id), []).append(
                TaskView(id=t.id, text=t.text, completed=t.completed, created_at=t.created_at)
            )
        return tasks

    async def _to_views(self, rows) -> List[DeploymentView]:
        tasks = await self._tasks_by_pair({d.cycle_id for d, _, _, _ in rows})
        return [
            DeploymentView(
                cycle_id=d.cycle_id,
                service_id=d.service_id,
                state=DeploymentState(d.state),
                started_at=d.started_at,
                finished_at=d.finished_at,
                updated_by=d.updated_by,
                updated_at=d.updated_at,
                service_name=s.name,
                service_description=s.description or "",
                cycle_label=c.label,
                cycle_created_at=c.created_at,
                added_to_cycle_at=m.created_at,
                tasks=tasks.get((d.cycle_id, d.service_id), []),
            )
            for d, s, c, m in rows
        ]

    async def deployments_view(self, cycle_id: int) -> List[DeploymentView]:
        await load_cycle(self.db, self.ctx, cycle_id)
        result = await self.db.execute(
            self._base_query().where(ServiceDeployment.cycle_id == cycle_id).order_by(Service.name)
        )
        return await self._to_views(result.all())

    async def dependency_edges(self, cycle_id: int) -> List[DependencyEdge]:
        result = await self.db.execute(
            select(Dependency)
            .where(Dependency.cycle_id == cycle_id)
            .order_by(Dependency.service_id, Dependency.depends_on_service_id)
        )
        return [
            DependencyEdge(cycle_id=e.cycle_id, service_id=e.service_id, depends_on_service_id=e.depends_on_service_id)
            for e in result.scalars().all()
        ]

    async def board(self, cycle_id: int) -> Board:
        cycle = await load_cycle(self.db, self.ctx, cycle_id)
        views = await self.deployments_view(cycle_id)
        edges = await self.dependency_edges(cycle_id)
        by_service = {v.service_id: v for v in views}
        entries = []
        for v in views:
            deps = [
                ServiceDependencyStatus(
                    service_id=e.depends_on_service_id,
                    service_name=by_service[e.depends_on_service_id].service_name if e.depends_on_service_id in by_service else "Unknown",
                    is_deployed=(
                        e.depends_on_service_id in by_service
                        and by_service[e.depends_on_service_id].state == DeploymentState.DEPLOYED
                    ),
                )
                for e in edges
                if e.service_id == v.service_id
            ]
            entries.append(BoardEntry(
                **v.model_dump(),
                dependencies=deps,
                tasks_completed=sum(1 for t in v.tasks if t.completed),
                tasks_total=len(v.tasks),
            ))
        return Board(
            cycle_id=cycle.id,
            cycle_label=cycle.label,
            is_active=cycle.is_active,
            completed_at=cycle.completed_at,
            deployments=entries,
            dependencies=edges,
        )

    async def latest_cycle_board(self) -> Optional[Board]:
        latest = await CycleStore(self.db, self.ctx).get_latest_cycle()
        if latest is None:
            return None
        return await self.board(latest.id)

    async def history(
        self,
        cycle_id: Optional[int] = None,
        state: Optional[str] = None,
        search: Optional[str] = None,
        limit: int = 200,
    ) -> List[DeploymentView]:
        query = self._base_query()
        if cycle_id is not None:
            query = query.where(ServiceDeployment.cycle_id == cycle_id)
        if state:
            query = query.where(ServiceDeployment.state == DeploymentState(state).value)
        if search:
            term = f"%{search.strip().lower()}%"
            query = query.where(or_(func.lower(Service.name).like(term), func.lower(DeploymentCycle.label).like(term)))
        query = query.order_by(ServiceDeployment.updated_at.desc(), ServiceDeployment.id.desc()).limit(limit)
        result = await self.db.execute(query)
        return await self._to_views(result.all())
