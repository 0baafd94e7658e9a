"""
折扣系统数据库表创建脚本
"""

import asyncio
import sys
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

# 添加项目根目录到Python路径
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy import text
from app.core import database
from app.core.clock import utc_now
from app.core.config import settings
from app.core.exceptions import DiscountValidationError
from app.models.discount import DiscountCreate
from app.repositories.discount_repository import DiscountRepository


async def create_database_if_not_exists():
    """创建数据库（如果不存在）"""
    # 连接到PostgreSQL服务器（不指定数据库）
    server_url = settings.database_url_computed.replace(f"/{settings.db_name}", "/postgres")

    engine = create_async_engine(server_url, isolation_level="AUTOCOMMIT")

    async with engine.connect() as conn:
        # 检查数据库是否存在
        result = await conn.execute(
            text("SELECT 1 FROM pg_database WHERE datname = :db_name"),
            {"db_name": settings.db_name}
        )

        if not result.fetchone():
            await conn.execute(text(f'CREATE DATABASE "{settings.db_name}"'))
            print(f"数据库 '{settings.db_name}' 创建成功")
        else:
            print(f"数据库 '{settings.db_name}' 已存在")

    await engine.dispose()


async def insert_sample_discounts():
    """插入示例折扣数据，经过规范化和校验流程"""
    now = utc_now()
    sample_discounts = [
        DiscountCreate(
            discount_id="welcome_2024",
            code=" welcome10 ",
            usage_limit=1000,
            starts_at=now,
            ends_at=now + timedelta(days=30)
        ),
        DiscountCreate(
            discount_id="partner_2024",
            code="partner15",
            commission_percentage=Decimal("15.00"),
            starts_at=now
        ),
        DiscountCreate(
            discount_id="partner_2024_vip",
            code="partner15-vip",
            parent_discount_id="partner_2024",
            usage_limit=50,
            commission_percentage=Decimal("20.00"),
            starts_at=now,
            ends_at=now + timedelta(days=90)
        )
    ]

    async with database.async_session_maker() as session:
        repo = DiscountRepository(session)
        for discount_data in sample_discounts:
            try:
                db_discount = await repo.create(discount_data)
                print(f"插入折扣: {db_discount.code}")
            except DiscountValidationError as e:
                print(f"折扣跳过: {discount_data.code.strip()} ({e.message})")
        await session.commit()


async def main():
    """主函数"""
    print("开始创建折扣系统数据库表...")

    try:
        # 1. 创建数据库
        await create_database_if_not_exists()

        # 2. 创建表结构
        await database.init_database()
        await database.create_tables()

        # 3. 插入示例数据
        await insert_sample_discounts()

        print("折扣系统数据库初始化完成！")

    except Exception as e:
        print(f"数据库初始化失败: {e}")
        raise

    finally:
        await database.close_database()


if __name__ == "__main__":
    asyncio.run(main())
