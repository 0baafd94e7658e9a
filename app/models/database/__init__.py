"""
数据库模型包初始化文件
"""

from .discount_db import DiscountDB, CommissionDB

__all__ = [
    "DiscountDB",
    "CommissionDB"
]
