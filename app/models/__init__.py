"""
数据模型包初始化文件
"""

from .discount import (
    DiscountRecord,
    DiscountCreate,
    DiscountUpdate,
    DiscountValidation,
    DiscountResponse,
    Commission
)

__all__ = [
    "DiscountRecord",
    "DiscountCreate",
    "DiscountUpdate",
    "DiscountValidation",
    "DiscountResponse",
    "Commission"
]
