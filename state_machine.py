import asyncio
from contextlib import asynccontextmanager
from typing import Dict, FrozenSet, List, NamedTuple, Optional, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
import logging
import weakref

from board_models import DeploymentState, RequestContext
from core.db import transaction
from dependency_gate import DependencyGate
from models.base import utcnow
from models.service_deployment import ServiceDeployment
from tenant_scope import load_open_cycle, load_cycle, load_service
from utils.audit import log_audit_event
from utils.exceptions import DependenciesNotDeployed, StateConflict, ValidationFailed, service_not_in_cycle

logger = logging.getLogger(__name__)

NOT_READY = DeploymentState.NOT_READY.value
READY = DeploymentState.READY.value
TRIGGERED = DeploymentState.TRIGGERED.value
DEPLOYED = DeploymentState.DEPLOYED.value


class Transition(NamedTuple):
    action: str
    sources: FrozenSet[str]
    target: str
    gated: bool = False
    new_attempt: bool = False  # triggered 재진입 시 started_at을 새로 찍음


TRANSITIONS: Dict[str, Transition] = {
    "ready": Transition("ready", frozenset({NOT_READY}), READY),
    "start": Transition("start", frozenset({READY}), TRIGGERED, gated=True),
    "deployed": Transition("deployed", frozenset({TRIGGERED}), DEPLOYED),
    "reset_not_ready": Transition("reset_not_ready", frozenset({READY, TRIGGERED, DEPLOYED}), NOT_READY),
    "reset_ready": Transition("reset_ready", frozenset({TRIGGERED, DEPLOYED}), READY),
    "restart": Transition("restart", frozenset({DEPLOYED}), TRIGGERED, gated=True, new_attempt=True),
}

# 원래 RPC 이름으로도 호출 가능
ACTION_ALIASES = {
    "set_service_ready": "ready",
    "start_deployment": "start",
    "mark_deployed": "deployed",
    "reset_service_to_not_ready": "reset_not_ready",
    "set_service_ready_flexible": "reset_ready",
    "reset_triggered": "restart",
    "reset_service_to_triggered": "restart",
}


def resolve_action(action: str) -> Transition:
    name = ACTION_ALIASES.get(action, action)
    transition = TRANSITIONS.get(name)
    if transition is None:
        raise ValidationFailed(
            code="UNKNOWN_ACTION",
            message=f"알 수 없는 상태 변경 요청입니다: {action}",
            dev_message=f"Action '{action}' not in {sorted(TRANSITIONS)}",
        )
    return transition


def allowed_actions(state: str) -> List[str]:
    return [t.action for t in TRANSITIONS.values() if state in t.sources]


class CycleLocks:
    """사이클 단위 전이 직렬화 (프로세스 내부). 프로세스 간에는 DB 행 락이 담당"""

    def __init__(self):
        # 보유자나 대기자가 없는 락은 자동으로 사라짐
        self._locks: "weakref.WeakValueDictionary[Tuple[int, int], asyncio.Lock]" = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, tenant_id: int, cycle_id: int) -> asyncio.Lock:
        key = (tenant_id, cycle_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, tenant_id: int, cycle_id: int):
        lock = self.get(tenant_id, cycle_id)
        async with lock:
            yield


class DeploymentStateMachine:
    def __init__(self, db: AsyncSession, ctx: RequestContext, locks: Optional[CycleLocks] = None):
        self.db = db
        self.ctx = ctx
        self.locks = locks if locks is not None else CycleLocks()

    async def get_deployment(self, cycle_id: int, service_id: int) -> ServiceDeployment:
        await load_cycle(self.db, self.ctx, cycle_id)
        return await self._load_deployment(cycle_id, service_id)

    async def _load_deployment(self, cycle_id: int, service_id: int, for_update: bool = False) -> ServiceDeployment:
        query = select(ServiceDeployment).where(
            ServiceDeployment.cycle_id == cycle_id, ServiceDeployment.service_id == service_id
        )
        if for_update:
            query = query.with_for_update()
        result = await self.db.execute(query)
        deployment = result.scalars().first()
        if deployment is None:
            raise service_not_in_cycle(cycle_id, service_id)
        return deployment

    async def apply(self, cycle_id: int, service_id: int, action: str) -> ServiceDeployment:
        transition = resolve_action(action)
        async with self.locks.hold(self.ctx.tenant_id, cycle_id):
            async with transaction(self.db):
                cycle = await load_open_cycle(self.db, self.ctx, cycle_id)
                service = await load_service(self.db, self.ctx, service_id)
                deployment = await self._load_deployment(cycle_id, service_id, for_update=True)
                current = deployment.state
                if current not in transition.sources:
                    raise StateConflict(
                        code="INVALID_TRANSITION",
                        message=f"'{current}' 상태에서는 '{transition.action}' 작업을 할 수 없습니다.",
                        dev_message=(
                            f"{service.name}@{cycle.label}: {current} -> {transition.target} via "
                            f"{transition.action} not allowed (allowed: {allowed_actions(current)})"
                        ),
                        detail=current,
                    )
                if transition.gated:
                    # 게이트 확인과 쓰기가 같은 트랜잭션/락 안에서 일어나야 함
                    unmet = await DependencyGate(self.db, self.ctx).evaluate(cycle_id, service_id, lock=True)
                    if unmet:
                        raise DependenciesNotDeployed(
                            service.name,
                            unmet,
                            dev_message=f"{service.name}@{cycle.label}: unmet {[u.service_id for u in unmet]}",
                        )
                self._enter(deployment, transition)
                await self.db.flush()
                await log_audit_event(
                    self.db, self.ctx, f"deployment_{transition.action}",
                    f"{service.name}: {current} -> {transition.target}",
                    cycle_id=cycle_id,
                )
        logger.info(f"[state][{cycle.label}][{service.name}] {current} -> {deployment.state} by {self.ctx.email}")
        return deployment

    def _enter(self, deployment: ServiceDeployment, transition: Transition) -> None:
        now = utcnow()
        target = transition.target
        if target == TRIGGERED:
            if transition.new_attempt or deployment.started_at is None:
                deployment.started_at = now
            deployment.finished_at = None
        elif target == DEPLOYED:
            deployment.finished_at = now
        else:
            # not_ready/ready로 되돌리면 진행 기록 초기화
            deployment.started_at = None
            deployment.finished_at = None
        deployment.state = target
        deployment.updated_by = self.ctx.email
        deployment.updated_at = now

    async def set_ready(self, cycle_id: int, service_id: int) -> ServiceDeployment:
        return await self.apply(cycle_id, service_id, "ready")

    async def start_deployment(self, cycle_id: int, service_id: int) -> ServiceDeployment:
        return await self.apply(cycle_id, service_id, "start")

    async def mark_deployed(self, cycle_id: int, service_id: int) -> ServiceDeployment:
        return await self.apply(cycle_id, service_id, "deployed")

    async def reset_to_not_ready(self, cycle_id: int, service_id: int) -> ServiceDeployment:
        return await self.apply(cycle_id, service_id, "reset_not_ready")

    async def reset_to_ready(self, cycle_id: int, service_id: int) -> ServiceDeployment:
        return await self.apply(cycle_id, service_id, "reset_ready")

    async def restart_deployment(self, cycle_id: int, service_id: int) -> ServiceDeployment:
        return await self.apply(cycle_id, service_id, "restart")
