from typing import Dict, Iterable, List, Optional, Set
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy import delete, or_
import logging

from board_models import DeploymentState, RequestContext
from core.db import transaction
from models.cycle import CycleService, DeploymentCycle
from models.dependency import Dependency
from models.service import Service
from models.service_deployment import ServiceDeployment
from models.task import TaskItem
from models.base import utcnow
from tenant_scope import load_cycle, load_open_cycle, load_service, find_membership, load_membership
from utils.audit import log_audit_event
from utils.exceptions import ReferentialError, StateConflict

logger = logging.getLogger(__name__)


def find_dependency_path(edges: Dict[int, Set[int]], start: int, goal: int) -> Optional[List[int]]:
    """start에서 의존 간선을 따라 goal에 도달하는 경로. 없으면 None"""
    stack = [(start, [start])]
    seen = set()
    while stack:
        node, path = stack.pop()
        if node == goal:
            return path
        if node in seen:
            continue
        seen.add(node)
        for nxt in sorted(edges.get(node, ()), reverse=True):
            if nxt not in seen:
                stack.append((nxt, path + [nxt]))
    return None


class CycleMembership:
    def __init__(self, db: AsyncSession, ctx: RequestContext):
        self.db = db
        self.ctx = ctx

    # --- 조회 ---

    async def member_ids(self, cycle_id: int) -> Set[int]:
        result = await self.db.execute(select(CycleService.service_id).where(CycleService.cycle_id == cycle_id))
        return set(result.scalars().all())

    async def list_cycle_services(self, cycle_id: int) -> List[dict]:
        await load_cycle(self.db, self.ctx, cycle_id)
        result = await self.db.execute(
            select(Service, CycleService, ServiceDeployment)
            .join(CycleService, CycleService.service_id == Service.id)
            .outerjoin(
                ServiceDeployment,
                (ServiceDeployment.cycle_id == CycleService.cycle_id) & (ServiceDeployment.service_id == Service.id),
            )
            .where(CycleService.cycle_id == cycle_id)
            .order_by(Service.name)
        )
        rows = []
        for service, membership, deployment in result.all():
            rows.append({
                "id": service.id,
                "name": service.name,
                "description": service.description or "",
                "created_at": service.created_at,
                "added_to_cycle_at": membership.created_at,
                "deployment_state": deployment.state if deployment else DeploymentState.NOT_READY.value,
            })
        return rows

    async def list_available_services(self, cycle_id: int) -> List[Service]:
        await load_cycle(self.db, self.ctx, cycle_id)
        members = select(CycleService.service_id).where(CycleService.cycle_id == cycle_id)
        result = await self.db.execute(
            select(Service)
            .where(Service.tenant_id == self.ctx.tenant_id, Service.id.not_in(members))
            .order_by(Service.name)
        )
        return result.scalars().all()

    async def list_dependencies(self, cycle_id: int, service_id: Optional[int] = None) -> List[Dependency]:
        await load_cycle(self.db, self.ctx, cycle_id)
        return await self._dependencies(cycle_id, service_id)

    async def _dependencies(self, cycle_id: int, service_id: Optional[int] = None) -> List[Dependency]:
        query = select(Dependency).where(Dependency.cycle_id == cycle_id)
        if service_id is not None:
            query = query.where(Dependency.service_id == service_id)
        result = await self.db.execute(query.order_by(Dependency.service_id, Dependency.depends_on_service_id))
        return result.scalars().all()

    # --- 멤버십 변경 ---

    async def add_service_to_cycle(self, cycle_id: int, service_id: int) -> CycleService:
        async with transaction(self.db):
            cycle = await load_open_cycle(self.db, self.ctx, cycle_id, for_update=True)
            service = await load_service(self.db, self.ctx, service_id)
            if await find_membership(self.db, cycle_id, service_id) is not None:
                raise StateConflict(
                    code="SERVICE_ALREADY_IN_CYCLE",
                    message="이미 사이클에 포함된 서비스입니다.",
                    dev_message=f"Service(id={service_id}) already member of cycle {cycle_id}",
                )
            membership = self._add_member(cycle_id, service_id)
            await self.db.flush()
            await log_audit_event(self.db, self.ctx, "cycle_service_add", f"{service.name} -> {cycle.label}", cycle_id=cycle_id)
        return membership

    def _add_member(self, cycle_id: int, service_id: int) -> CycleService:
        membership = CycleService(cycle_id=cycle_id, service_id=service_id)
        deployment = ServiceDeployment(
            cycle_id=cycle_id,
            service_id=service_id,
            state=DeploymentState.NOT_READY.value,
            updated_by=self.ctx.email,
            updated_at=utcnow(),
        )
        self.db.add_all([membership, deployment])
        return membership

    async def remove_service_from_cycle(self, cycle_id: int, service_id: int) -> None:
        async with transaction(self.db):
            cycle = await load_open_cycle(self.db, self.ctx, cycle_id, for_update=True)
            membership = await load_membership(self.db, cycle_id, service_id)
            # 연쇄 삭제: 양방향 의존 간선, 배포 레코드, 태스크, 멤버십
            await self.db.execute(
                delete(Dependency).where(
                    Dependency.cycle_id == cycle_id,
                    or_(Dependency.service_id == service_id, Dependency.depends_on_service_id == service_id),
                )
            )
            await self.db.execute(
                delete(ServiceDeployment).where(
                    ServiceDeployment.cycle_id == cycle_id, ServiceDeployment.service_id == service_id
                )
            )
            await self.db.execute(
                delete(TaskItem).where(TaskItem.cycle_id == cycle_id, TaskItem.service_id == service_id)
            )
            await self.db.delete(membership)
            await self.db.flush()
            await log_audit_event(self.db, self.ctx, "cycle_service_remove", f"service {service_id} <- {cycle.label}", cycle_id=cycle_id)

    # --- 의존성 ---

    async def set_dependencies(self, cycle_id: int, service_id: int, dependency_ids: Iterable[int]) -> List[Dependency]:
        async with transaction(self.db):
            cycle = await load_open_cycle(self.db, self.ctx, cycle_id, for_update=True)
            await load_membership(self.db, cycle_id, service_id)
            edges = await self._replace_dependencies(cycle, service_id, dependency_ids)
            await log_audit_event(
                self.db, self.ctx, "dependencies_set",
                f"service {service_id} depends on {sorted(e.depends_on_service_id for e in edges)}",
                cycle_id=cycle_id,
            )
        return edges

    async def copy_dependencies(self, service_id: int, from_cycle_id: int, to_cycle_id: int) -> List[Dependency]:
        async with transaction(self.db):
            await load_cycle(self.db, self.ctx, from_cycle_id)
            target = await load_open_cycle(self.db, self.ctx, to_cycle_id, for_update=True)
            await load_membership(self.db, to_cycle_id, service_id)
            source_edges = await self._dependencies(from_cycle_id, service_id)
            members = await self.member_ids(to_cycle_id)
            wanted = [e.depends_on_service_id for e in source_edges if e.depends_on_service_id in members]
            edges = await self._replace_dependencies(target, service_id, wanted)
            await log_audit_event(
                self.db, self.ctx, "dependencies_copy",
                f"service {service_id}: cycle {from_cycle_id} -> {to_cycle_id} ({len(edges)} edges)",
                cycle_id=to_cycle_id,
            )
        return edges

    async def _replace_dependencies(self, cycle: DeploymentCycle, service_id: int, dependency_ids: Iterable[int]) -> List[Dependency]:
        wanted = set(int(d) for d in dependency_ids)
        if service_id in wanted:
            raise ReferentialError(
                code="INVALID_DEPENDENCY",
                message="서비스는 자기 자신에 의존할 수 없습니다.",
                dev_message=f"Self dependency for service {service_id} in cycle {cycle.id}",
            )
        members = await self.member_ids(cycle.id)
        outsiders = sorted(wanted - members)
        if outsiders:
            raise ReferentialError(
                code="INVALID_DEPENDENCY",
                message="사이클에 포함되지 않은 서비스에는 의존할 수 없습니다.",
                dev_message=f"Dependency targets {outsiders} are not members of cycle {cycle.id}",
                detail=",".join(str(o) for o in outsiders),
            )

        graph: Dict[int, Set[int]] = {}
        for edge in await self._dependencies(cycle.id):
            if edge.service_id != service_id:
                graph.setdefault(edge.service_id, set()).add(edge.depends_on_service_id)
        graph[service_id] = set(wanted)
        for dep_id in sorted(wanted):
            path = find_dependency_path(graph, dep_id, service_id)
            if path:
                names = await self._service_names([service_id] + path)
                chain = " -> ".join(names.get(i, str(i)) for i in [service_id] + path)
                raise ReferentialError(
                    code="CIRCULAR_DEPENDENCY",
                    message=f"순환 의존성이 생깁니다: {chain}",
                    dev_message=f"Cycle {cycle.id}: dependency {service_id} -> {dep_id} closes loop {[service_id] + path}",
                    detail=chain,
                )

        await self.db.execute(
            delete(Dependency).where(Dependency.cycle_id == cycle.id, Dependency.service_id == service_id)
        )
        edges = [Dependency(cycle_id=cycle.id, service_id=service_id, depends_on_service_id=d) for d in sorted(wanted)]
        self.db.add_all(edges)
        await self.db.flush()
        return edges

    async def _service_names(self, ids: Iterable[int]) -> Dict[int, str]:
        result = await self.db.execute(select(Service.id, Service.name).where(Service.id.in_(set(ids))))
        return {row[0]: row[1] for row in result.all()}

    # --- 사이클 간 복사 ---

    async def copy_services(self, source_cycle_id: int, target_cycle_id: int) -> List[int]:
        async with transaction(self.db):
            source = await load_cycle(self.db, self.ctx, source_cycle_id)
            target = await load_open_cycle(self.db, self.ctx, target_cycle_id, for_update=True)
            added = await self.copy_into(source, target)
            await log_audit_event(
                self.db, self.ctx, "cycle_services_copy",
                f"{len(added)} services: {source.label} -> {target.label}",
                cycle_id=target.id,
            )
        return added

    async def copy_into(self, source: DeploymentCycle, target: DeploymentCycle) -> List[int]:
        """source의 멤버 중 target에 없는 서비스를 not_ready로 추가하고 의존성/태스크 복사. commit 하지 않음"""
        result = await self.db.execute(
            select(CycleService.service_id).where(CycleService.cycle_id == source.id).order_by(CycleService.id)
        )
        source_members = result.scalars().all()
        existing = await self.member_ids(target.id)
        added = [sid for sid in source_members if sid not in existing]
        for sid in added:
            self._add_member(target.id, sid)
        await self.db.flush()

        members = existing | set(added)
        added_set = set(added)
        for edge in await self._dependencies(source.id):
            if edge.service_id in added_set and edge.depends_on_service_id in members:
                self.db.add(Dependency(cycle_id=target.id, service_id=edge.service_id, depends_on_service_id=edge.depends_on_service_id))

        if added:
            tasks = await self.db.execute(
                select(TaskItem)
                .where(TaskItem.cycle_id == source.id, TaskItem.service_id.in_(added))
                .order_by(TaskItem.created_at, TaskItem.id)
            )
            for task in tasks.scalars().all():
                # 새 사이클에서는 미완료로 시작
                self.db.add(TaskItem(cycle_id=target.id, service_id=task.service_id, text=task.text, completed=False, created_at=utcnow()))
        await self.db.flush()
        logger.info(f"[membership] copied {len(added)} services from cycle {source.id} to {target.id}")
        return added
