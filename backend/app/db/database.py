from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator
import os
import logging
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# 데이터베이스 연결 정보 설정
POSTGRES_USER = os.getenv("POSTGRES_USER")
POSTGRES_PASSWORD = os.getenv("POSTGRES_PASSWORD")
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "db")
POSTGRES_PORT = os.getenv("POSTGRES_PORT", "5432")
POSTGRES_DB = os.getenv("POSTGRES_DB")

# DATABASE_URL이 있으면 우선 사용 (테스트/로컬은 sqlite+aiosqlite)
SQLALCHEMY_DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql+asyncpg://{POSTGRES_USER}:{POSTGRES_PASSWORD}@{POSTGRES_HOST}:{POSTGRES_PORT}/{POSTGRES_DB}",
)

DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "0"))
DB_QUERY_TIMEOUT = float(os.getenv("DB_QUERY_TIMEOUT", "5.0"))
DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"


def build_engine(url: str = SQLALCHEMY_DATABASE_URL):
    """
    커넥션 풀 크기(N)가 제한된 비동기 엔진을 생성합니다.
    SQLite는 이벤트 루프 간 커넥션 공유를 피하기 위해 NullPool을 사용합니다.
    """
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=DB_ECHO, poolclass=NullPool)
    return create_async_engine(
        url,
        echo=DB_ECHO,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=True,
    )


engine = build_engine()

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

class Base(DeclarativeBase):
    pass

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session

async def init_db():
    """
    서버 시작 시 테이블을 생성합니다.
    """
    # Base.metadata 등록을 위해 모델 임포트
    from app.db.models import user, conversation, message  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"[Database] 테이블 준비 완료 ({engine.url.get_backend_name()})")

async def drop_db():
    from app.db.models import user, conversation, message  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
