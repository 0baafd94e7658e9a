"""
测试配置文件 - pytest fixtures和共用配置
"""

import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.models.discount import DiscountRecord, DiscountCreate
from app.models.database.discount_db import DiscountDB, CommissionDB  # noqa: F401


@pytest_asyncio.fixture(scope="function")
async def test_db_engine():
    """测试数据库引擎 - 使用内存SQLite，每个测试独立建表"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,  # 设为True可以看到SQL语句
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )

    # 创建表结构
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_db_engine) -> AsyncSession:
    """测试数据库会话"""
    async_session_maker = async_sessionmaker(
        test_db_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@pytest.fixture
def base_time():
    """固定的基准时间"""
    return datetime(2024, 6, 1, 12, 0, 0)


@pytest.fixture
def sample_discount(base_time):
    """示例折扣记录 - 同步fixture"""
    return DiscountRecord(
        discount_id="discount_001",
        code="SAVE10",
        is_dynamic=False,
        is_disabled=False,
        starts_at=base_time,
        ends_at=base_time + timedelta(days=30),
        usage_limit=3,
        usage_count=0,
        commission_percentage=Decimal("10.00")
    )


@pytest.fixture
def sample_discount_create(base_time):
    """示例折扣创建数据 - 同步fixture"""
    return DiscountCreate(
        discount_id="discount_create_001",
        code="  summer20 ",
        starts_at=base_time,
        ends_at=base_time + timedelta(days=7),
        usage_limit=2,
        commission_percentage=Decimal("12.50")
    )
