"""
折扣数据库操作层 - 折扣记录的持久化与并发控制
"""

import logging
import uuid
from typing import List, Optional, Dict, Any
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update, and_, or_, desc, func
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import utc_now, ensure_utc
from app.core.config import settings
from app.core.exceptions import (
    DiscountError,
    InvalidCodeError,
    DiscountNotFoundError,
    DiscountConflictError,
    DuplicateDiscountCodeError,
    DiscountValidationError
)
from app.models.discount import DiscountRecord, DiscountCreate, DiscountUpdate, Commission
from app.models.database.discount_db import DiscountDB, CommissionDB
from app.services.discount_validator import (
    normalize_code,
    normalize_record,
    validate_discount,
    record_usage,
    calculate_commission
)

logger = logging.getLogger(__name__)


class DiscountRepository:
    """折扣数据库操作类"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_discount_id(
        self,
        discount_id: str,
        include_deleted: bool = False
    ) -> Optional[DiscountDB]:
        """根据折扣ID获取折扣"""
        conditions = [DiscountDB.discount_id == discount_id]
        if not include_deleted:
            conditions.append(DiscountDB.deleted_at.is_(None))

        result = await self.db.execute(
            select(DiscountDB)
            .where(and_(*conditions))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Optional[DiscountDB]:
        """根据折扣代码获取未删除的折扣(代码不区分大小写)"""
        try:
            normalized = normalize_code(code)
        except InvalidCodeError:
            return None

        result = await self.db.execute(
            select(DiscountDB)
            .where(
                and_(
                    DiscountDB.code == normalized,
                    DiscountDB.deleted_at.is_(None)
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def code_exists(self, code: str, exclude_discount_id: Optional[str] = None) -> bool:
        """检查未删除的折扣中是否已存在该代码"""
        conditions = [
            DiscountDB.code == normalize_code(code),
            DiscountDB.deleted_at.is_(None)
        ]
        if exclude_discount_id:
            conditions.append(DiscountDB.discount_id != exclude_discount_id)

        result = await self.db.execute(
            select(func.count(DiscountDB.discount_id)).where(and_(*conditions))
        )
        return (result.scalar() or 0) > 0

    async def load_ancestors(
        self,
        parent_discount_id: Optional[str],
        max_depth: Optional[int] = None
    ) -> Dict[str, DiscountRecord]:
        """加载父折扣链，供循环检查使用"""
        if max_depth is None:
            max_depth = settings.max_parent_depth

        ancestors: Dict[str, DiscountRecord] = {}
        current_id = parent_discount_id

        while current_id is not None and current_id not in ancestors and len(ancestors) <= max_depth:
            db_parent = await self.get_by_discount_id(current_id, include_deleted=True)
            if not db_parent:
                break
            ancestors[current_id] = self.to_model(db_parent)
            current_id = db_parent.parent_discount_id

        return ancestors

    async def _check_record(self, record: DiscountRecord) -> DiscountRecord:
        """规范化并校验记录，任一校验失败时整体拒绝"""
        code_is_valid = True
        try:
            record = normalize_record(record)
        except InvalidCodeError:
            code_is_valid = False

        ancestors = await self.load_ancestors(record.parent_discount_id)
        errors: List[DiscountError] = validate_discount(record, ancestors.get, settings.max_parent_depth)

        if code_is_valid and await self.code_exists(record.code, exclude_discount_id=record.discount_id):
            errors.append(DuplicateDiscountCodeError(record.code))

        if errors:
            raise DiscountValidationError(errors)
        return record

    async def create(self, discount_data: DiscountCreate) -> DiscountDB:
        """创建折扣"""
        now = utc_now()
        data = discount_data.model_dump(exclude={"discount_id", "starts_at"})
        record = DiscountRecord(
            discount_id=discount_data.discount_id or str(uuid.uuid4()),
            starts_at=discount_data.starts_at or now,
            usage_count=0,
            created_at=now,
            updated_at=now,
            **data
        )
        record = await self._check_record(record)

        db_discount = DiscountDB(**record.model_dump())
        self.db.add(db_discount)
        await self.db.flush()

        logger.info(f"折扣创建成功: {record.discount_id} ({record.code})")
        return db_discount

    async def update(self, discount_id: str, discount_data: DiscountUpdate) -> Optional[DiscountDB]:
        """更新折扣，未设置的字段保持不变"""
        db_discount = await self.get_by_discount_id(discount_id)
        if not db_discount:
            return None

        changes = discount_data.model_dump(exclude_unset=True)
        record = self.to_model(db_discount).model_copy(
            update={**changes, "updated_at": utc_now()}
        )
        # model_copy 不做校验，重新构造以校验字段类型
        record = await self._check_record(DiscountRecord(**record.model_dump()))

        for field, value in record.model_dump(exclude={"discount_id", "created_at", "deleted_at"}).items():
            setattr(db_discount, field, value)
        await self.db.flush()

        logger.info(f"折扣更新成功: {discount_id}, 字段: {list(changes.keys())}")
        return db_discount

    async def set_disabled(self, discount_id: str, is_disabled: bool) -> bool:
        """设置折扣停用状态"""
        result = await self.db.execute(
            update(DiscountDB)
            .where(
                and_(
                    DiscountDB.discount_id == discount_id,
                    DiscountDB.deleted_at.is_(None)
                )
            )
            .values(is_disabled=is_disabled, updated_at=utc_now())
        )
        return result.rowcount > 0

    async def soft_delete(self, discount_id: str) -> bool:
        """软删除折扣，删除后代码可被重新使用"""
        now = utc_now()
        result = await self.db.execute(
            update(DiscountDB)
            .where(
                and_(
                    DiscountDB.discount_id == discount_id,
                    DiscountDB.deleted_at.is_(None)
                )
            )
            .values(deleted_at=now, updated_at=now)
        )

        if result.rowcount > 0:
            logger.info(f"折扣已软删除: {discount_id}")
            return True
        return False

    async def record_usage(self, discount_id: str, now: Optional[datetime] = None) -> DiscountRecord:
        """
        记录一次折扣使用

        基于快照计算新状态，再以使用次数做CAS更新，
        并发修改导致更新失败时重新读取快照重试。

        Raises:
            DiscountNotFoundError: 折扣不存在
            UsageLimitExceededError: 折扣不可用
            DiscountConflictError: 重试后仍然冲突
        """
        if now is None:
            now = utc_now()

        attempts = max(settings.usage_update_retries, 1)
        for attempt in range(1, attempts + 1):
            db_discount = await self.get_by_discount_id(discount_id)
            if not db_discount:
                raise DiscountNotFoundError(discount_id)

            snapshot = self.to_model(db_discount)
            updated = record_usage(snapshot, now).model_copy(update={"updated_at": utc_now()})

            result = await self.db.execute(
                update(DiscountDB)
                .where(
                    and_(
                        DiscountDB.discount_id == discount_id,
                        DiscountDB.usage_count == snapshot.usage_count,
                        DiscountDB.deleted_at.is_(None)
                    )
                )
                .values(usage_count=updated.usage_count, updated_at=updated.updated_at)
                .execution_options(synchronize_session=False)
            )

            if result.rowcount == 1:
                logger.info(
                    f"折扣使用记录成功: {discount_id}, "
                    f"使用次数 {snapshot.usage_count} -> {updated.usage_count}"
                )
                return updated

            logger.warning(f"折扣使用次数并发冲突: {discount_id}, 第{attempt}次尝试")

        raise DiscountConflictError(discount_id, attempts)

    async def get_usable_discounts(
        self,
        current_time: Optional[datetime] = None,
        user_id: Optional[str] = None
    ) -> List[DiscountDB]:
        """获取当前可用的折扣"""
        current_time = ensure_utc(current_time) if current_time is not None else utc_now()

        conditions = [
            DiscountDB.deleted_at.is_(None),
            DiscountDB.is_disabled.is_(False),
            DiscountDB.starts_at <= current_time,
            or_(DiscountDB.ends_at.is_(None), DiscountDB.ends_at >= current_time),
            or_(DiscountDB.usage_limit.is_(None), DiscountDB.usage_count < DiscountDB.usage_limit)
        ]

        if user_id:
            conditions.append(
                or_(
                    DiscountDB.user_id == user_id,
                    DiscountDB.user_id.is_(None)  # 通用折扣
                )
            )
        else:
            conditions.append(DiscountDB.user_id.is_(None))

        query = select(DiscountDB).where(and_(*conditions)).order_by(desc(DiscountDB.starts_at))

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def get_expiring_discounts(self, days_ahead: int = 7) -> List[DiscountDB]:
        """获取即将过期的折扣"""
        now = utc_now()
        expiry_date = now + timedelta(days=days_ahead)

        query = select(DiscountDB).where(
            and_(
                DiscountDB.deleted_at.is_(None),
                DiscountDB.is_disabled.is_(False),
                DiscountDB.ends_at.is_not(None),
                DiscountDB.ends_at <= expiry_date,
                DiscountDB.ends_at >= now,
                or_(DiscountDB.usage_limit.is_(None), DiscountDB.usage_count < DiscountDB.usage_limit)
            )
        ).order_by(DiscountDB.ends_at)

        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def add_commission(
        self,
        discount_id: str,
        order_id: str,
        sale_amount: Decimal
    ) -> Optional[CommissionDB]:
        """为订单记录折扣佣金，折扣未设置佣金比例时返回None"""
        db_discount = await self.get_by_discount_id(discount_id, include_deleted=True)
        if not db_discount:
            raise DiscountNotFoundError(discount_id)

        if db_discount.commission_percentage is None:
            return None

        commission = CommissionDB(
            commission_id=str(uuid.uuid4()),
            discount_id=discount_id,
            order_id=order_id,
            sale_amount=sale_amount,
            commission_percentage=db_discount.commission_percentage,
            commission_amount=calculate_commission(sale_amount, db_discount.commission_percentage),
            created_at=utc_now()
        )
        self.db.add(commission)
        await self.db.flush()
        return commission

    async def get_commissions(self, discount_id: str) -> List[CommissionDB]:
        """获取折扣的佣金记录"""
        result = await self.db.execute(
            select(CommissionDB)
            .where(CommissionDB.discount_id == discount_id)
            .order_by(desc(CommissionDB.created_at))
        )
        return list(result.scalars().all())

    async def get_order_ids(self, discount_id: str) -> List[str]:
        """获取通过佣金关联到折扣的订单ID"""
        result = await self.db.execute(
            select(CommissionDB.order_id)
            .where(CommissionDB.discount_id == discount_id)
            .distinct()
            .order_by(CommissionDB.order_id)
        )
        return list(result.scalars().all())

    async def get_discount_stats(self, discount_id: str) -> Dict[str, Any]:
        """获取折扣统计信息"""
        discount = await self.get_by_discount_id(discount_id, include_deleted=True)
        if not discount:
            return {}

        commission_stats = await self.db.execute(
            select(
                func.count(CommissionDB.commission_id).label("total_commissions"),
                func.sum(CommissionDB.sale_amount).label("total_sales"),
                func.sum(CommissionDB.commission_amount).label("total_commission_amount"),
                func.count(func.distinct(CommissionDB.order_id)).label("unique_orders")
            ).where(CommissionDB.discount_id == discount_id)
        )

        stats_row = commission_stats.fetchone()

        return {
            "discount_id": discount.discount_id,
            "code": discount.code,
            "is_disabled": discount.is_disabled,
            "is_deleted": discount.deleted_at is not None,
            "usage_limit": discount.usage_limit,
            "usage_count": discount.usage_count,
            "remaining_count": (
                max(discount.usage_limit - discount.usage_count, 0)
                if discount.usage_limit is not None else None
            ),
            "usage_rate": (
                discount.usage_count / discount.usage_limit * 100
                if discount.usage_limit else 0
            ),
            "total_commissions": stats_row.total_commissions or 0,
            "total_sales": float(stats_row.total_sales or 0),
            "total_commission_amount": float(stats_row.total_commission_amount or 0),
            "unique_orders": stats_row.unique_orders or 0
        }

    def to_model(self, db_discount: DiscountDB) -> DiscountRecord:
        """转换为Pydantic模型"""
        return DiscountRecord(
            discount_id=db_discount.discount_id,
            code=db_discount.code,
            is_dynamic=db_discount.is_dynamic or False,
            rule_id=db_discount.rule_id,
            is_disabled=db_discount.is_disabled or False,
            parent_discount_id=db_discount.parent_discount_id,
            starts_at=db_discount.starts_at,
            ends_at=db_discount.ends_at,
            valid_duration=db_discount.valid_duration,
            usage_limit=db_discount.usage_limit,
            usage_count=db_discount.usage_count or 0,
            user_id=db_discount.user_id,
            commission_percentage=db_discount.commission_percentage,
            deleted_at=db_discount.deleted_at,
            created_at=db_discount.created_at,
            updated_at=db_discount.updated_at
        )

    def commission_to_model(self, db_commission: CommissionDB) -> Commission:
        """转换佣金记录为Pydantic模型"""
        return Commission(
            commission_id=db_commission.commission_id,
            discount_id=db_commission.discount_id,
            order_id=db_commission.order_id,
            sale_amount=db_commission.sale_amount,
            commission_percentage=db_commission.commission_percentage,
            commission_amount=db_commission.commission_amount,
            created_at=db_commission.created_at
        )
