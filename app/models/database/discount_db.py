"""
折扣相关数据库模型
"""

from sqlalchemy import Column, String, Integer, Numeric, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.core.database import Base


class DiscountDB(Base):
    """折扣数据库表"""

    __tablename__ = "discounts"

    # 主键和基本信息
    discount_id = Column(String(50), primary_key=True, comment="折扣ID")
    code = Column(String(50), nullable=False, comment="折扣代码(大写)")
    is_dynamic = Column(Boolean, nullable=False, default=False, comment="是否动态代码")
    rule_id = Column(String(50), index=True, comment="关联折扣规则ID")
    is_disabled = Column(Boolean, nullable=False, default=False, comment="是否停用")
    parent_discount_id = Column(
        String(50),
        ForeignKey("discounts.discount_id"),
        comment="父折扣ID"
    )

    # 有效期
    starts_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), comment="生效时间")
    ends_at = Column(DateTime(timezone=True), comment="失效时间")
    valid_duration = Column(String(50), comment="有效时长")

    # 使用限制
    usage_limit = Column(Integer, comment="总使用次数限制")
    usage_count = Column(Integer, nullable=False, default=0, comment="已使用次数")

    # 专属用户和佣金
    user_id = Column(String(50), index=True, comment="专属用户ID")
    commission_percentage = Column(Numeric(5, 2), comment="佣金比例")

    # 时间戳
    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), comment="更新时间")
    deleted_at = Column(DateTime(timezone=True), comment="软删除时间")

    # 关系映射
    commissions = relationship("CommissionDB", back_populates="discount")

    # 索引: 代码仅在未删除记录中唯一
    __table_args__ = (
        Index(
            "uq_discounts_code_active",
            "code",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL")
        ),
        {'comment': '折扣信息表'}
    )


class CommissionDB(Base):
    """折扣佣金记录表"""

    __tablename__ = "discount_commissions"

    # 主键和关联信息
    commission_id = Column(String(50), primary_key=True, comment="佣金记录ID")
    discount_id = Column(String(50), ForeignKey("discounts.discount_id"), nullable=False, index=True, comment="折扣ID")
    order_id = Column(String(50), nullable=False, index=True, comment="订单ID")

    # 金额信息
    sale_amount = Column(Numeric(12, 2), nullable=False, comment="销售金额")
    commission_percentage = Column(Numeric(5, 2), nullable=False, comment="佣金比例")
    commission_amount = Column(Numeric(12, 2), nullable=False, comment="佣金金额")

    # 时间戳
    created_at = Column(DateTime(timezone=True), server_default=func.now(), comment="创建时间")

    discount = relationship("DiscountDB", back_populates="commissions")

    __table_args__ = (
        {'comment': '折扣佣金记录表'}
    )
