from typing import List, Optional
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy import func
import logging

from board_models import RequestContext
from core.db import transaction
from models.base import utcnow
from models.cycle import CycleService
from models.service import Service
from tenant_scope import load_service
from utils.audit import log_audit_event
from utils.exceptions import ValidationFailed

logger = logging.getLogger(__name__)


def _name_exists(name: str) -> ValidationFailed:
    return ValidationFailed(
        code="NAME_EXISTS",
        message=f"이미 등록된 서비스명입니다: {name}",
        dev_message=f"Service(name={name}) already exists in tenant",
    )


class ServicePool:
    """테넌트 단위 서비스 정의. 사이클과 무관"""

    def __init__(self, db: AsyncSession, ctx: RequestContext):
        self.db = db
        self.ctx = ctx

    async def list_services(self) -> List[dict]:
        # in_cycles는 저장하지 않고 매번 계산
        in_cycles = (
            select(CycleService.service_id, func.count(func.distinct(CycleService.cycle_id)).label("in_cycles"))
            .group_by(CycleService.service_id)
            .subquery()
        )
        result = await self.db.execute(
            select(Service, func.coalesce(in_cycles.c.in_cycles, 0))
            .outerjoin(in_cycles, in_cycles.c.service_id == Service.id)
            .where(Service.tenant_id == self.ctx.tenant_id)
            .order_by(Service.name)
        )
        return [
            {
                "id": s.id,
                "name": s.name,
                "description": s.description or "",
                "created_at": s.created_at,
                "in_cycles": int(count),
            }
            for s, count in result.all()
        ]

    async def get_service(self, service_id: int) -> Service:
        return await load_service(self.db, self.ctx, service_id)

    async def _find_by_name(self, name: str, exclude_id: Optional[int] = None) -> Optional[Service]:
        query = select(Service).where(Service.tenant_id == self.ctx.tenant_id, Service.name == name)
        if exclude_id is not None:
            query = query.where(Service.id != exclude_id)
        result = await self.db.execute(query)
        return result.scalars().first()

    def _validate_name(self, name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationFailed(
                code="NAME_REQUIRED",
                message="서비스명을 입력하세요.",
                dev_message="Empty service name",
            )
        return name

    async def create_service(self, name: str, description: Optional[str] = None) -> Service:
        name = self._validate_name(name)
        try:
            async with transaction(self.db):
                if await self._find_by_name(name):
                    raise _name_exists(name)
                service = Service(
                    tenant_id=self.ctx.tenant_id,
                    name=name,
                    description=(description or "").strip(),
                    created_at=utcnow(),
                )
                self.db.add(service)
                await self.db.flush()
                await log_audit_event(self.db, self.ctx, "service_create", name)
        except IntegrityError as e:
            raise _name_exists(name) from e
        logger.info(f"[service] registered '{name}' tenant={self.ctx.tenant_id}")
        return service

    async def update_service(self, service_id: int, name: Optional[str] = None, description: Optional[str] = None) -> Service:
        # None 인 필드는 유지
        if name is not None:
            name = self._validate_name(name)
        try:
            async with transaction(self.db):
                service = await load_service(self.db, self.ctx, service_id)
                if name is None:
                    name = service.name
                if await self._find_by_name(name, exclude_id=service.id):
                    raise _name_exists(name)
                old = service.name
                service.name = name
                if description is not None:
                    service.description = description.strip()
                await self.db.flush()
                await log_audit_event(self.db, self.ctx, "service_update", f"{old} -> {name}")
        except IntegrityError as e:
            raise _name_exists(name) from e
        return service
