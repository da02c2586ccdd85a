import os
import sys
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.future import select
from httpx import AsyncClient, ASGITransport

from core.db import Base, get_db
import models  # noqa: F401  모든 테이블 등록
from models.tenant import Tenant, TenantMember
from board_models import MemberRole, RequestContext
from api.rest import create_app
from notifications import InMemoryBroker
from utils.jwt import create_access_token

# 테스트용 DB: 연결 하나를 공유하는 메모리 sqlite
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def tenants(session_factory):
    async with session_factory() as session:
        acme = Tenant(name="Acme", email_domain="acme.com")
        globex = Tenant(name="Globex", email_domain="globex.com")
        session.add_all([acme, globex])
        await session.flush()
        session.add_all([
            TenantMember(tenant_id=acme.id, email="admin@acme.com", role="ADMIN"),
            TenantMember(tenant_id=acme.id, email="viewer@acme.com", role="VIEWER"),
        ])
        await session.commit()
        return {"acme": acme.id, "globex": globex.id}


# 동시성 테스트용: 세션마다 별도 연결을 쓰는 파일 sqlite
@pytest_asyncio.fixture(scope="function")
async def file_session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'timelinci.db'}",
        connect_args={"check_same_thread": False, "timeout": 10},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        session.add(Tenant(name="Acme", email_domain="acme.com"))
        await session.commit()
    yield factory
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def file_ctx(file_session_factory):
    async with file_session_factory() as session:
        tenant = (await session.execute(select(Tenant).where(Tenant.email_domain == "acme.com"))).scalars().one()
    return RequestContext(tenant_id=tenant.id, email="dev@acme.com", role=MemberRole.EDITOR)


@pytest.fixture
def ctx(tenants):
    return RequestContext(tenant_id=tenants["acme"], email="dev@acme.com", role=MemberRole.EDITOR)


@pytest.fixture
def other_ctx(tenants):
    return RequestContext(tenant_id=tenants["globex"], email="dev@globex.com", role=MemberRole.EDITOR)


@pytest_asyncio.fixture(scope="function")
async def app(session_factory, tenants):
    app = create_app(broker=InMemoryBroker())

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def auth_headers(email: str) -> dict:
    return {"Authorization": f"Bearer {create_access_token({'sub': email})}"}


@pytest.fixture
def editor_headers():
    return auth_headers("dev@acme.com")


@pytest.fixture
def admin_headers():
    return auth_headers("admin@acme.com")


@pytest.fixture
def viewer_headers():
    return auth_headers("viewer@acme.com")


@pytest.fixture
def globex_headers():
    return auth_headers("dev@globex.com")
