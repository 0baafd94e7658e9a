"""
折扣业务服务层
提供折扣查询、校验、使用和管理的业务逻辑，并负责缓存维护
"""

import logging
from typing import TYPE_CHECKING, List, Optional, Dict, Any
from decimal import Decimal
from datetime import datetime

from app.core.clock import utc_now
from app.core.config import settings
from app.core.exceptions import (
    DiscountNotFoundError,
    InvalidCodeError,
    UsageLimitExceededError
)
from app.models.discount import (
    DiscountRecord,
    DiscountCreate,
    DiscountUpdate,
    DiscountValidation
)
from app.services.common_cache import discount_cache
from app.services.discount_validator import (
    normalize_code,
    validate_discount,
    get_unusable_reason,
    UNUSABLE_REASON_MESSAGES
)

if TYPE_CHECKING:
    from app.repositories.discount_repository import DiscountRepository

logger = logging.getLogger(__name__)


class DiscountService:
    """折扣业务服务"""

    def __init__(self, discount_repo: "DiscountRepository"):
        self.discount_repo = discount_repo
        self.cache = discount_cache
        self.cache_ttl = settings.discount_cache_ttl

    async def get_discount_by_code(self, code: str, use_cache: bool = True) -> Optional[DiscountRecord]:
        """根据折扣代码获取折扣"""
        try:
            normalized = normalize_code(code)
        except InvalidCodeError:
            return None

        cache_key = f"code:{normalized}"

        if use_cache:
            cached_discount = await self.cache.get_record(cache_key)
            if cached_discount is not None:
                return cached_discount

        db_discount = await self.discount_repo.get_by_code(normalized)
        if not db_discount:
            return None

        discount = self.discount_repo.to_model(db_discount)

        if use_cache:
            await self.cache.set_record(cache_key, discount, ttl=self.cache_ttl)

        return discount

    async def validate_discount_code(
        self,
        code: str,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> DiscountValidation:
        """验证折扣代码当前是否可用"""
        # 使用校验不走缓存，确保实时性
        if now is None:
            now = utc_now()

        try:
            normalized = normalize_code(code)
        except InvalidCodeError as e:
            return DiscountValidation(
                is_valid=False,
                validation_errors=[e.message],
                error_codes=[e.error_code]
            )

        db_discount = await self.discount_repo.get_by_code(normalized)
        if not db_discount:
            return DiscountValidation(
                is_valid=False,
                validation_errors=["折扣不存在"],
                error_codes=[DiscountNotFoundError.error_code]
            )

        discount = self.discount_repo.to_model(db_discount)

        # 记录本身的合法性，父折扣链需要从数据库加载
        ancestors = {}
        if discount.parent_discount_id is not None:
            ancestors = await self.discount_repo.load_ancestors(discount.parent_discount_id)
        errors = validate_discount(discount, ancestors.get, settings.max_parent_depth)
        if errors:
            return DiscountValidation(
                is_valid=False,
                discount=discount,
                validation_errors=[error.message for error in errors],
                error_codes=[error.error_code for error in errors]
            )

        if discount.user_id is not None and discount.user_id != user_id:
            return DiscountValidation(
                is_valid=True,
                is_usable=False,
                discount=discount,
                validation_errors=["该折扣仅限指定用户使用"],
                error_codes=["user_mismatch"],
                remaining_uses=discount.remaining_uses
            )

        reason = get_unusable_reason(discount, now)
        if reason is not None:
            return DiscountValidation(
                is_valid=True,
                is_usable=False,
                discount=discount,
                validation_errors=[UNUSABLE_REASON_MESSAGES[reason]],
                error_codes=[reason],
                remaining_uses=discount.remaining_uses
            )

        return DiscountValidation(
            is_valid=True,
            is_usable=True,
            discount=discount,
            remaining_uses=discount.remaining_uses
        )

    async def redeem_discount(
        self,
        code: str,
        user_id: Optional[str] = None,
        order_id: Optional[str] = None,
        sale_amount: Optional[Decimal] = None,
        now: Optional[datetime] = None
    ) -> DiscountRecord:
        """
        使用折扣

        Raises:
            DiscountNotFoundError: 折扣不存在
            UsageLimitExceededError: 折扣不可用或不属于该用户
            DiscountConflictError: 并发更新冲突
        """
        db_discount = await self.discount_repo.get_by_code(code)
        if not db_discount:
            raise DiscountNotFoundError(code)

        discount = self.discount_repo.to_model(db_discount)
        if discount.user_id is not None and discount.user_id != user_id:
            raise UsageLimitExceededError(
                discount.discount_id,
                discount.usage_count,
                discount.usage_limit,
                reason="user_mismatch"
            )

        updated = await self.discount_repo.record_usage(discount.discount_id, now)

        if order_id and sale_amount is not None:
            commission = await self.discount_repo.add_commission(
                discount.discount_id, order_id, sale_amount
            )
            if commission is not None:
                logger.info(
                    f"折扣佣金已记录: {discount.code}, 订单 {order_id}, "
                    f"佣金 {commission.commission_amount}"
                )

        # 清除相关缓存
        await self._clear_discount_caches(discount.code)

        return updated

    async def get_usable_discounts(
        self,
        user_id: Optional[str] = None,
        use_cache: bool = True
    ) -> List[DiscountRecord]:
        """获取当前可用的折扣"""
        cache_key = f"usable:{user_id or 'all'}"

        if use_cache:
            cached_discounts = await self.cache.get_records(cache_key)
            if cached_discounts is not None:
                return cached_discounts

        db_discounts = await self.discount_repo.get_usable_discounts(user_id=user_id)
        discounts = [self.discount_repo.to_model(db_discount) for db_discount in db_discounts]

        if use_cache:
            await self.cache.set_records(cache_key, discounts, ttl=300)  # 可用列表缓存5分钟

        return discounts

    async def create_discount(self, discount_data: DiscountCreate) -> DiscountRecord:
        """创建折扣"""
        db_discount = await self.discount_repo.create(discount_data)
        discount = self.discount_repo.to_model(db_discount)

        await self._clear_all_discount_caches()

        return discount

    async def update_discount(
        self,
        discount_id: str,
        discount_data: DiscountUpdate
    ) -> Optional[DiscountRecord]:
        """更新折扣"""
        db_discount = await self.discount_repo.get_by_discount_id(discount_id)
        if not db_discount:
            return None

        old_code = db_discount.code
        updated_discount = await self.discount_repo.update(discount_id, discount_data)
        discount = self.discount_repo.to_model(updated_discount)

        await self._clear_discount_caches(old_code)
        if discount.code != old_code:
            await self._clear_discount_caches(discount.code)

        return discount

    async def disable_discount(self, discount_id: str) -> bool:
        """停用折扣"""
        return await self._set_disabled(discount_id, True)

    async def enable_discount(self, discount_id: str) -> bool:
        """启用折扣"""
        return await self._set_disabled(discount_id, False)

    async def delete_discount(self, discount_id: str) -> bool:
        """软删除折扣"""
        db_discount = await self.discount_repo.get_by_discount_id(discount_id)
        if not db_discount:
            return False

        code = db_discount.code
        success = await self.discount_repo.soft_delete(discount_id)
        if success:
            await self._clear_discount_caches(code)
        return success

    async def get_discount_stats(self, discount_id: str, use_cache: bool = True) -> Dict[str, Any]:
        """获取折扣统计信息"""
        cache_key = f"stats:{discount_id}"

        if use_cache:
            cached_stats = await self.cache.get(cache_key)
            if cached_stats:
                return cached_stats

        stats = await self.discount_repo.get_discount_stats(discount_id)

        if use_cache and stats:
            await self.cache.set(cache_key, stats, ttl=self.cache_ttl)

        return stats

    async def _set_disabled(self, discount_id: str, is_disabled: bool) -> bool:
        db_discount = await self.discount_repo.get_by_discount_id(discount_id)
        if not db_discount:
            return False

        code = db_discount.code
        success = await self.discount_repo.set_disabled(discount_id, is_disabled)
        if success:
            logger.info(f"折扣{'停用' if is_disabled else '启用'}: {discount_id}")
            await self._clear_discount_caches(code)
        return success

    async def _clear_discount_caches(self, code: Optional[str] = None):
        """清除折扣相关缓存"""
        patterns = ["usable:*", "stats:*"]

        if code:
            patterns.append(f"code:{code}")

        for pattern in patterns:
            await self.cache.delete_pattern(pattern)

    async def _clear_all_discount_caches(self):
        """清除所有折扣缓存"""
        await self.cache.delete_pattern("*")
