from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError, OperationalError
import logging

from board_models import RequestContext
from core.db import transaction
from cycle_membership import CycleMembership
from models.base import utcnow
from models.cycle import DeploymentCycle
from models.tenant import Tenant
from retry_policy import RetryPolicy
from tenant_scope import load_cycle, ensure_open
from utils.audit import log_audit_event
from utils.exceptions import ValidationFailed, StateConflict

logger = logging.getLogger(__name__)

ACTIVATE_RETRIES = 3


def _label_required() -> ValidationFailed:
    return ValidationFailed(
        code="LABEL_REQUIRED",
        message="사이클 이름을 입력하세요.",
        dev_message="Empty cycle label",
    )


def _label_exists(label: str) -> ValidationFailed:
    return ValidationFailed(
        code="LABEL_EXISTS",
        message=f"이미 존재하는 사이클 이름입니다: {label}",
        dev_message=f"DeploymentCycle(label={label}) already exists in tenant",
    )


class CycleStore:
    def __init__(self, db: AsyncSession, ctx: RequestContext):
        self.db = db
        self.ctx = ctx

    def _tenant_cycles(self):
        return select(DeploymentCycle).where(DeploymentCycle.tenant_id == self.ctx.tenant_id)

    async def list_cycles(self) -> List[DeploymentCycle]:
        result = await self.db.execute(
            self._tenant_cycles().order_by(DeploymentCycle.created_at.desc(), DeploymentCycle.id.desc())
        )
        return result.scalars().all()

    async def get_cycle(self, cycle_id: int) -> DeploymentCycle:
        return await load_cycle(self.db, self.ctx, cycle_id)

    async def get_active_cycle(self) -> Optional[DeploymentCycle]:
        result = await self.db.execute(self._tenant_cycles().where(DeploymentCycle.is_active.is_(True)))
        return result.scalars().first()

    async def get_latest_cycle(self) -> Optional[DeploymentCycle]:
        result = await self.db.execute(
            self._tenant_cycles().order_by(DeploymentCycle.created_at.desc(), DeploymentCycle.id.desc()).limit(1)
        )
        return result.scalars().first()

    async def _label_taken(self, label: str, exclude_id: Optional[int] = None) -> bool:
        query = self._tenant_cycles().where(DeploymentCycle.label == label)
        if exclude_id is not None:
            query = query.where(DeploymentCycle.id != exclude_id)
        result = await self.db.execute(query)
        return result.scalars().first() is not None

    async def create_cycle(self, label: str) -> DeploymentCycle:
        label = (label or "").strip()
        if not label:
            raise _label_required()
        try:
            async with transaction(self.db):
                if await self._label_taken(label):
                    raise _label_exists(label)
                previous = await self.get_latest_cycle()
                cycle = DeploymentCycle(
                    tenant_id=self.ctx.tenant_id,
                    label=label,
                    created_by=self.ctx.email,
                    created_at=utcnow(),
                    is_active=False,
                )
                self.db.add(cycle)
                await self.db.flush()
                copied = []
                if previous is not None:
                    # 직전 사이클의 서비스/의존성/태스크를 not_ready 상태로 복사
                    copied = await CycleMembership(self.db, self.ctx).copy_into(previous, cycle)
                await log_audit_event(
                    self.db, self.ctx, "cycle_create",
                    f"{label} (copied {len(copied)} services from {previous.label if previous else '-'})",
                    cycle_id=cycle.id,
                )
        except IntegrityError as e:
            # 동시 생성으로 unique 제약 위반
            raise _label_exists(label) from e
        logger.info(f"[cycle] created '{label}' id={cycle.id} tenant={self.ctx.tenant_id}")
        return cycle

    async def activate_cycle(self, cycle_id: int) -> DeploymentCycle:
        # 동시 활성화는 부분 unique 인덱스 위반이나 락 충돌로 드러나므로 새 트랜잭션으로 재시도
        policy = RetryPolicy(max_retries=ACTIVATE_RETRIES, delay=0.05, retry_on=(IntegrityError, OperationalError))
        try:
            cycle, previous = await policy.execute_with_retry(self._activate, cycle_id)
        except (IntegrityError, OperationalError) as e:
            raise StateConflict(
                code="ACTIVATION_CONFLICT",
                message="다른 사이클 활성화와 충돌했습니다. 다시 시도하세요.",
                dev_message=f"Activation of DeploymentCycle(id={cycle_id}) kept conflicting: {e.__class__.__name__}",
            ) from e
        logger.info(f"[cycle] activated '{cycle.label}' (deactivated {previous}) tenant={self.ctx.tenant_id}")
        return cycle

    async def _activate(self, cycle_id: int):
        async with transaction(self.db):
            # 테넌트 행을 먼저 잠가 같은 테넌트의 활성화를 직렬화
            await self.db.execute(select(Tenant.id).where(Tenant.id == self.ctx.tenant_id).with_for_update())
            cycle = await load_cycle(self.db, self.ctx, cycle_id, for_update=True)
            ensure_open(cycle)
            result = await self.db.execute(
                self._tenant_cycles()
                .where(DeploymentCycle.is_active.is_(True), DeploymentCycle.id != cycle_id)
                .with_for_update()
            )
            others = result.scalars().all()
            for other in others:
                other.is_active = False
            # 기존 활성 사이클을 먼저 내려야 인덱스 위반이 없음
            await self.db.flush()
            cycle.is_active = True
            await self.db.flush()
            previous = [c.label for c in others]
            await log_audit_event(
                self.db, self.ctx, "cycle_activate",
                f"{cycle.label} (deactivated {previous})",
                cycle_id=cycle.id,
            )
        return cycle, previous

    async def complete_active_cycle(self) -> DeploymentCycle:
        async with transaction(self.db):
            result = await self.db.execute(
                self._tenant_cycles().where(DeploymentCycle.is_active.is_(True)).with_for_update()
            )
            cycle = result.scalars().first()
            if cycle is None:
                raise StateConflict(
                    code="NO_ACTIVE_CYCLE",
                    message="완료할 활성 사이클이 없습니다.",
                    dev_message=f"No active cycle for tenant {self.ctx.tenant_id}",
                )
            cycle.is_active = False
            cycle.completed_at = utcnow()
            cycle.completed_by = self.ctx.email
            await self.db.flush()
            await log_audit_event(self.db, self.ctx, "cycle_complete", cycle.label, cycle_id=cycle.id)
        logger.info(f"[cycle] completed '{cycle.label}' tenant={self.ctx.tenant_id}")
        return cycle

    async def rename_cycle(self, cycle_id: int, label: str) -> DeploymentCycle:
        label = (label or "").strip()
        try:
            async with transaction(self.db):
                cycle = await load_cycle(self.db, self.ctx, cycle_id, for_update=True)
                ensure_open(cycle)
                if not label:
                    raise _label_required()
                if await self._label_taken(label, exclude_id=cycle.id):
                    raise _label_exists(label)
                old = cycle.label
                cycle.label = label
                await self.db.flush()
                await log_audit_event(self.db, self.ctx, "cycle_rename", f"{old} -> {label}", cycle_id=cycle.id)
        except IntegrityError as e:
            raise _label_exists(label) from e
        return cycle
