"""
服务包初始化文件
"""

from .common_cache import SimpleCache, DiscountCache, discount_cache
from .discount_service import DiscountService

__all__ = [
    "SimpleCache",
    "DiscountCache",
    "discount_cache",
    "DiscountService"
]
