from fastapi import HTTPException, Depends, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.exc import IntegrityError
import logging

from board_models import MemberRole, RequestContext
from core.config import DEFAULT_MEMBER_ROLE
from core.db import get_db
from models.tenant import Tenant, TenantMember
from utils.jwt import decode_token

logger = logging.getLogger(__name__)

# Security
security = HTTPBearer(auto_error=False)

credentials_exception = HTTPException(
    status_code=401,
    detail="Could not validate credentials",
    headers={"WWW-Authenticate": "Bearer"},
)


def email_domain(email: str) -> str:
    return email.rsplit("@", 1)[-1].strip().lower() if "@" in email else ""


async def get_tenant_by_domain(domain: str, db: AsyncSession):
    result = await db.execute(select(Tenant).where(Tenant.email_domain == domain))
    return result.scalars().first()


async def get_or_create_member(tenant: Tenant, email: str, db: AsyncSession) -> TenantMember:
    result = await db.execute(
        select(TenantMember).where(TenantMember.tenant_id == tenant.id, TenantMember.email == email)
    )
    member = result.scalars().first()
    if member is not None:
        return member
    # 허용 도메인 사용자의 첫 접근: 기본 역할로 등록
    role = DEFAULT_MEMBER_ROLE if DEFAULT_MEMBER_ROLE in MemberRole.__members__ else MemberRole.VIEWER.value
    member = TenantMember(tenant_id=tenant.id, email=email, role=role)
    db.add(member)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        result = await db.execute(
            select(TenantMember).where(TenantMember.tenant_id == tenant.id, TenantMember.email == email)
        )
        return result.scalars().one()
    logger.info(f"[auth] provisioned {email} as {role} in tenant {tenant.id}")
    return member


async def get_current_user(credentials: HTTPAuthorizationCredentials = Security(security), db: AsyncSession = Depends(get_db)) -> RequestContext:
    if credentials is None:
        raise credentials_exception
    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise credentials_exception
    email = (payload.get("sub") or payload.get("email") or "").strip().lower()
    if not email:
        raise credentials_exception
    tenant = await get_tenant_by_domain(email_domain(email), db)
    if tenant is None:
        # 허용 목록에 없는 도메인
        raise HTTPException(status_code=401, detail="Email domain is not allowed")
    member = await get_or_create_member(tenant, email, db)
    return RequestContext(tenant_id=tenant.id, email=email, role=MemberRole(member.role))


def has_role(*required_roles: str):
    async def _has_role(current_user: RequestContext = Depends(get_current_user)):
        if current_user.role.value not in required_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Not enough permissions. Required role: {', '.join(required_roles)}"
            )
        return current_user
    return _has_role


# 변경 작업은 EDITOR 이상
require_editor = has_role(MemberRole.ADMIN.value, MemberRole.EDITOR.value)
require_admin = has_role(MemberRole.ADMIN.value)
