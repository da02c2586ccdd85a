from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from core.config import DATABASE_URL

# Base 정의 (모델에서 import)
Base = declarative_base()

# 싱글턴 엔진/세션
engine = None
SessionLocal = None


def _connect_args(db_url: str) -> dict:
    if db_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


def init_engine(db_url=DATABASE_URL):
    global engine, SessionLocal
    if engine is None:
        kwargs = {"future": True, "connect_args": _connect_args(db_url)}
        # 메모리 DB는 연결 하나를 공유해야 테이블이 유지됨
        if db_url.startswith("sqlite") and (":memory:" in db_url or db_url.endswith("://")):
            kwargs["poolclass"] = StaticPool
        engine = create_async_engine(db_url, **kwargs)
        SessionLocal = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    return engine


def get_engine():
    return engine


def get_sessionmaker():
    if SessionLocal is None:
        init_engine()
    return SessionLocal


# FastAPI 의존성 주입용 세션 생성 함수
async def get_db():
    session_factory = get_sessionmaker()
    async with session_factory() as session:
        yield session


async def create_tables(target_engine=None):
    target_engine = target_engine or get_engine()
    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine():
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None


# SQLAlchemy 동기 엔진 (Alembic, 시드 스크립트용)
SYNC_DATABASE_URL = DATABASE_URL.replace("+aiosqlite", "") if "+aiosqlite" in DATABASE_URL else DATABASE_URL


def get_sync_engine(echo: bool = False):
    return create_engine(SYNC_DATABASE_URL, echo=echo, future=True)


def get_db_url():
    return DATABASE_URL


@asynccontextmanager
async def transaction(db: AsyncSession):
    # 여러 단계 작업을 하나의 원자적 단위로 처리. 실패 시 전부 롤백
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise
