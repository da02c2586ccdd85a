from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from board_models import DeploymentState, RequestContext, UnmetDependency
from models.dependency import Dependency
from models.service import Service
from models.service_deployment import ServiceDeployment
from tenant_scope import load_cycle


class DependencyGate:
    """사이클 내 직접 의존 서비스 중 deployed가 아닌 것을 계산. 전이적 의존은 보지 않음"""

    def __init__(self, db: AsyncSession, ctx: RequestContext):
        self.db = db
        self.ctx = ctx

    async def unmet_dependencies(self, cycle_id: int, service_id: int) -> List[UnmetDependency]:
        await load_cycle(self.db, self.ctx, cycle_id)
        return await self.evaluate(cycle_id, service_id)

    async def evaluate(self, cycle_id: int, service_id: int, lock: bool = False) -> List[UnmetDependency]:
        # 상태 머신도 같은 트랜잭션 안에서 이 메서드를 사용 (lock=True면 의존 레코드에 공유 락)
        if lock:
            targets = select(Dependency.depends_on_service_id).where(
                Dependency.cycle_id == cycle_id, Dependency.service_id == service_id
            )
            await self.db.execute(
                select(ServiceDeployment.id)
                .where(ServiceDeployment.cycle_id == cycle_id, ServiceDeployment.service_id.in_(targets))
                .with_for_update(read=True)
            )
        query = (
            select(Service.id, Service.name, ServiceDeployment.state)
            .join(Dependency, Dependency.depends_on_service_id == Service.id)
            .outerjoin(
                ServiceDeployment,
                (ServiceDeployment.cycle_id == Dependency.cycle_id)
                & (ServiceDeployment.service_id == Dependency.depends_on_service_id),
            )
            .where(Dependency.cycle_id == cycle_id, Dependency.service_id == service_id)
            .order_by(Service.name, Service.id)
        )
        result = await self.db.execute(query)
        return [
            UnmetDependency(service_id=dep_id, service_name=name)
            for dep_id, name, state in result.all()
            if state != DeploymentState.DEPLOYED.value
        ]
