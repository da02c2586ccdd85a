from models.audit_log import AuditLog
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from typing import Optional, List
import logging

logger = logging.getLogger(__name__)


async def log_audit_event(db: AsyncSession, ctx, action: str, detail: Optional[str] = None, cycle_id: Optional[int] = None):
    # 변경 작업과 같은 트랜잭션에 기록 (commit은 호출자 담당)
    log = AuditLog(tenant_id=ctx.tenant_id, actor=ctx.email, action=action, detail=detail, cycle_id=cycle_id)
    db.add(log)
    await db.flush()
    logger.info(f"[audit][{action}] tenant={ctx.tenant_id} actor={ctx.email} {detail or ''}")
    return log


async def list_audit_events(db: AsyncSession, ctx, cycle_id: Optional[int] = None, limit: int = 100) -> List[AuditLog]:
    query = select(AuditLog).where(AuditLog.tenant_id == ctx.tenant_id)
    if cycle_id is not None:
        query = query.where(AuditLog.cycle_id == cycle_id)
    query = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit)
    result = await db.execute(query)
    return result.scalars().all()
