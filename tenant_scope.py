from typing import Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from board_models import RequestContext
from models.cycle import DeploymentCycle, CycleService
from models.service import Service
from utils.exceptions import cycle_not_found, service_not_found, service_not_in_cycle, completed_cycle

# 모든 조회는 요청 컨텍스트의 tenant_id로 한정. 다른 테넌트 레코드는 "없음"으로 보고


async def load_cycle(db: AsyncSession, ctx: RequestContext, cycle_id: int, for_update: bool = False) -> DeploymentCycle:
    query = select(DeploymentCycle).where(
        DeploymentCycle.id == cycle_id,
        DeploymentCycle.tenant_id == ctx.tenant_id,
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    cycle = result.scalars().first()
    if cycle is None:
        raise cycle_not_found(cycle_id)
    return cycle


async def load_open_cycle(db: AsyncSession, ctx: RequestContext, cycle_id: int, for_update: bool = False) -> DeploymentCycle:
    cycle = await load_cycle(db, ctx, cycle_id, for_update=for_update)
    ensure_open(cycle)
    return cycle


def ensure_open(cycle: DeploymentCycle) -> None:
    if cycle.completed_at is not None:
        raise completed_cycle(cycle.id, cycle.label)


async def load_service(db: AsyncSession, ctx: RequestContext, service_id: int) -> Service:
    result = await db.execute(
        select(Service).where(Service.id == service_id, Service.tenant_id == ctx.tenant_id)
    )
    service = result.scalars().first()
    if service is None:
        raise service_not_found(service_id)
    return service


async def find_membership(db: AsyncSession, cycle_id: int, service_id: int) -> Optional[CycleService]:
    result = await db.execute(
        select(CycleService).where(CycleService.cycle_id == cycle_id, CycleService.service_id == service_id)
    )
    return result.scalars().first()


async def load_membership(db: AsyncSession, cycle_id: int, service_id: int) -> CycleService:
    membership = await find_membership(db, cycle_id, service_id)
    if membership is None:
        raise service_not_in_cycle(cycle_id, service_id)
    return membership
