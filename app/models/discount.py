"""
折扣相关数据模型
"""

from decimal import Decimal
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, validator

from app.core.clock import utc_now, ensure_utc


class DiscountRecord(BaseModel):
    """折扣记录 - 不可变值对象，状态变化返回新副本"""

    discount_id: str = Field(..., description="折扣ID")
    code: str = Field(..., description="折扣代码(规范化后为去空格大写)")
    is_dynamic: bool = Field(default=False, description="是否为动态生成的代码")
    rule_id: Optional[str] = Field(None, description="关联折扣规则ID")
    is_disabled: bool = Field(default=False, description="是否被管理员停用")
    parent_discount_id: Optional[str] = Field(None, description="父折扣ID")
    starts_at: datetime = Field(default_factory=utc_now, description="生效时间")
    ends_at: Optional[datetime] = Field(None, description="失效时间(为空表示长期有效)")
    valid_duration: Optional[str] = Field(None, description="有效时长(透传字段)")
    usage_limit: Optional[int] = Field(None, ge=0, description="总使用次数限制(为空表示不限)")
    usage_count: int = Field(default=0, ge=0, description="已使用次数")
    user_id: Optional[str] = Field(None, description="专属用户ID")
    commission_percentage: Optional[Decimal] = Field(None, description="佣金比例(0-100)")
    deleted_at: Optional[datetime] = Field(None, description="软删除时间")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True
        json_encoders = {
            Decimal: str,
            datetime: lambda v: v.isoformat()
        }

    @validator('starts_at', 'ends_at', 'deleted_at', 'created_at', 'updated_at')
    def to_utc(cls, v):
        """统一为UTC aware时间，naive时间视为UTC"""
        return ensure_utc(v)

    @property
    def is_deleted(self) -> bool:
        """是否已软删除"""
        return self.deleted_at is not None

    @property
    def remaining_uses(self) -> Optional[int]:
        """剩余可用次数，不限次数时返回None"""
        if self.usage_limit is None:
            return None
        return max(self.usage_limit - self.usage_count, 0)


class DiscountCreate(BaseModel):
    """创建折扣模型"""

    discount_id: Optional[str] = Field(None, description="折扣ID(为空时自动生成)")
    code: str = Field(..., min_length=1, description="折扣代码(长度在规范化后校验)")
    is_dynamic: bool = False
    rule_id: Optional[str] = None
    is_disabled: bool = False
    parent_discount_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    valid_duration: Optional[str] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    user_id: Optional[str] = None
    commission_percentage: Optional[Decimal] = None

    @validator('valid_duration')
    def blank_duration_to_none(cls, v):
        """空白有效时长视为未设置"""
        if v is not None and not v.strip():
            return None
        return v


class DiscountUpdate(BaseModel):
    """更新折扣模型"""

    code: Optional[str] = Field(None, min_length=1)
    is_dynamic: Optional[bool] = None
    rule_id: Optional[str] = None
    is_disabled: Optional[bool] = None
    parent_discount_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    valid_duration: Optional[str] = None
    usage_limit: Optional[int] = Field(None, ge=0)
    user_id: Optional[str] = None
    commission_percentage: Optional[Decimal] = None


class DiscountValidation(BaseModel):
    """折扣验证结果"""

    is_valid: bool = Field(..., description="记录本身是否合法")
    is_usable: bool = Field(default=False, description="当前是否可用")
    discount: Optional[DiscountRecord] = Field(None, description="折扣信息")
    validation_errors: List[str] = Field(default_factory=list, description="验证错误")
    error_codes: List[str] = Field(default_factory=list, description="错误代码")
    remaining_uses: Optional[int] = Field(None, description="剩余可用次数")


class Commission(BaseModel):
    """佣金记录"""

    commission_id: str = Field(..., description="佣金记录ID")
    discount_id: str = Field(..., description="折扣ID")
    order_id: str = Field(..., description="订单ID")
    sale_amount: Decimal = Field(..., ge=0, description="销售金额")
    commission_percentage: Decimal = Field(..., ge=0, le=100, description="佣金比例")
    commission_amount: Decimal = Field(..., ge=0, description="佣金金额")
    created_at: datetime = Field(default_factory=utc_now)


class DiscountResponse(BaseModel):
    """折扣响应模型"""

    discount_id: str
    code: str
    is_dynamic: bool
    rule_id: Optional[str]
    is_disabled: bool
    parent_discount_id: Optional[str]
    starts_at: datetime
    ends_at: Optional[datetime]
    valid_duration: Optional[str]
    usage_limit: Optional[int]
    usage_count: int
    user_id: Optional[str]
    commission_percentage: Optional[Decimal]
    is_usable: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: DiscountRecord, now: Optional[datetime] = None) -> "DiscountResponse":
        """从DiscountRecord创建响应对象"""
        from app.services.discount_validator import is_usable

        return cls(
            discount_id=record.discount_id,
            code=record.code,
            is_dynamic=record.is_dynamic,
            rule_id=record.rule_id,
            is_disabled=record.is_disabled,
            parent_discount_id=record.parent_discount_id,
            starts_at=record.starts_at,
            ends_at=record.ends_at,
            valid_duration=record.valid_duration,
            usage_limit=record.usage_limit,
            usage_count=record.usage_count,
            user_id=record.user_id,
            commission_percentage=record.commission_percentage,
            is_usable=is_usable(record, now or utc_now()),
            created_at=record.created_at,
            updated_at=record.updated_at
        )
