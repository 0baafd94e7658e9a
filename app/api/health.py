from fastapi import APIRouter, HTTPException
import logging

from app.core.config import settings
from app.core.redis import redis_manager
from app.core.database import database_service
from app.services.common_cache import discount_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["健康检查"])


@router.get("")
async def health_check():
    """基础健康检查接口"""
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.app_version,
        "environment": settings.environment
    }


@router.get("/database")
async def database_health():
    """PostgreSQL 与折扣缓存连接检查"""
    health_status = {
        "postgresql": False,
        "redis": False,
        "discount_cache": discount_cache.redis_client is not None,
        "overall": False,
        "details": {}
    }

    try:
        pg_status = await database_service.health_check()
        health_status["postgresql"] = pg_status["status"] == "healthy"
        health_status["details"]["postgresql"] = pg_status["message"]

        if redis_manager.redis_pool:
            health_status["redis"] = await redis_manager.ping()
            health_status["details"]["redis"] = "连接正常" if health_status["redis"] else "连接失败"
        else:
            health_status["details"]["redis"] = "连接池未初始化"

        # 缓存不可用时折扣查询会回落到数据库，不影响整体状态
        health_status["overall"] = health_status["postgresql"] and health_status["redis"]

        if health_status["overall"]:
            logger.info("数据库连接检查全部通过")
        else:
            logger.warning(f"数据库连接检查部分失败: {health_status['details']}")
        return health_status

    except Exception as e:
        logger.error(f"数据库健康检查异常: {str(e)}")
        raise HTTPException(
            status_code=503,
            detail={
                "error": "数据库连接失败",
                "message": str(e),
                "status": health_status
            }
        )
