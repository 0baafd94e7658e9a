"""
通用缓存工具
为折扣服务提供简单的Redis JSON缓存，缓存故障只记录日志并视为未命中
"""

import json
import logging
from typing import List, Optional, Any
import redis.asyncio as redis
from pydantic import ValidationError

from app.core.config import settings
from app.models.discount import DiscountRecord

logger = logging.getLogger(__name__)


class SimpleCache:
    """简单缓存管理器"""

    def __init__(self, redis_client: Optional[redis.Redis] = None, key_prefix: str = ""):
        self.redis_client = redis_client
        self.key_prefix = key_prefix

    async def init_redis(self, redis_client: Optional[redis.Redis] = None) -> None:
        """初始化Redis连接，可复用已有连接池"""
        if redis_client is not None:
            self.redis_client = redis_client

        if not self.redis_client:
            self.redis_client = redis.from_url(
                settings.redis_url_computed,
                encoding='utf-8',
                decode_responses=True,
                socket_timeout=30,
                socket_connect_timeout=30,
                retry_on_timeout=True,
                max_connections=20
            )

        # 测试连接
        try:
            await self.redis_client.ping()
            logger.info(f"{self.key_prefix}缓存Redis连接初始化成功")
        except Exception as e:
            logger.error(f"Redis连接失败: {e}")
            raise

    async def close_redis(self) -> None:
        """关闭Redis连接"""
        if self.redis_client:
            await self.redis_client.aclose()
            self.redis_client = None

    def _get_key(self, key: str) -> str:
        """获取完整的缓存key"""
        return f"{self.key_prefix}{key}" if self.key_prefix else key

    async def get(self, key: str) -> Optional[Any]:
        """获取缓存值"""
        try:
            full_key = self._get_key(key)
            data = await self.redis_client.get(full_key)

            if data:
                return json.loads(data)

            return None

        except Exception as e:
            logger.error(f"获取缓存失败 {key}: {e}")
            return None

    async def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """设置缓存值"""
        try:
            full_key = self._get_key(key)
            data = json.dumps(value, default=str, ensure_ascii=False)

            await self.redis_client.setex(full_key, ttl, data)
            return True

        except Exception as e:
            logger.error(f"设置缓存失败 {key}: {e}")
            return False

    async def delete(self, key: str) -> bool:
        """删除缓存"""
        try:
            full_key = self._get_key(key)
            result = await self.redis_client.delete(full_key)
            return result > 0

        except Exception as e:
            logger.error(f"删除缓存失败 {key}: {e}")
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """删除匹配模式的所有缓存"""
        try:
            full_pattern = self._get_key(pattern)
            keys = []

            async for key in self.redis_client.scan_iter(match=full_pattern):
                keys.append(key)

            if keys:
                return await self.redis_client.delete(*keys)
            return 0

        except Exception as e:
            logger.error(f"删除模式缓存失败 {pattern}: {e}")
            return 0


class DiscountCache(SimpleCache):
    """折扣记录缓存，以JSON模式序列化DiscountRecord"""

    async def get_record(self, key: str) -> Optional[DiscountRecord]:
        records = await self._load(key, many=False)
        return records[0] if records else None

    async def get_records(self, key: str) -> Optional[List[DiscountRecord]]:
        """获取折扣列表，未命中返回None，缓存的空列表原样返回"""
        return await self._load(key, many=True)

    async def set_record(self, key: str, record: DiscountRecord, ttl: int = 3600) -> bool:
        return await self.set(key, record.model_dump(mode="json"), ttl=ttl)

    async def set_records(self, key: str, records: List[DiscountRecord], ttl: int = 3600) -> bool:
        return await self.set(key, [record.model_dump(mode="json") for record in records], ttl=ttl)

    async def _load(self, key: str, many: bool) -> Optional[List[DiscountRecord]]:
        data = await self.get(key)
        if data is None:
            return None

        try:
            if many:
                return [DiscountRecord.model_validate(item) for item in data]
            return [DiscountRecord.model_validate(data)]
        except (ValidationError, TypeError) as e:
            # 结构过期的缓存直接丢弃
            logger.warning(f"折扣缓存数据无效 {key}: {e}")
            await self.delete(key)
            return None


# 折扣模块缓存实例
discount_cache = DiscountCache(key_prefix="discount:")
