"""
业务异常定义 - 折扣校验与使用相关错误
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


class BusinessException(Exception):
    """可恢复的业务异常基类"""

    def __init__(
        self,
        message: str,
        error_code: str = "business_error",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}


class DiscountError(BusinessException):
    """折扣相关错误基类"""

    error_code = "discount_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            error_code=type(self).error_code,
            status_code=type(self).status_code,
            details=details
        )


class InvalidCodeError(DiscountError):
    """折扣代码规范化后为空"""

    error_code = "invalid_code"

    def __init__(self, raw_code: Optional[str], max_length: Optional[int] = None):
        if max_length is None:
            message = "折扣代码不能为空"
        else:
            message = f"折扣代码规范化后长度不能超过{max_length}"
        super().__init__(message, details={"raw_code": raw_code, "max_length": max_length})
        self.raw_code = raw_code
        self.max_length = max_length


class InvalidCommissionError(DiscountError):
    """佣金比例超出 [0, 100]"""

    error_code = "invalid_commission"

    def __init__(self, value: Decimal):
        super().__init__(
            f"佣金比例必须在0-100之间: {value}",
            details={"commission_percentage": str(value)}
        )
        self.value = value


class InvalidWindowError(DiscountError):
    """结束时间早于开始时间"""

    error_code = "invalid_window"

    def __init__(self, starts_at: datetime, ends_at: Optional[datetime]):
        super().__init__(
            "结束时间不能早于开始时间",
            details={"starts_at": str(starts_at), "ends_at": str(ends_at)}
        )
        self.starts_at = starts_at
        self.ends_at = ends_at


class InvalidUsageLimitError(DiscountError):
    """使用次数上限低于已使用次数"""

    error_code = "invalid_usage_limit"

    def __init__(self, usage_limit: int, usage_count: int):
        super().__init__(
            f"使用次数上限({usage_limit})不能小于已使用次数({usage_count})",
            details={"usage_limit": usage_limit, "usage_count": usage_count}
        )
        self.usage_limit = usage_limit
        self.usage_count = usage_count


class UsageLimitExceededError(DiscountError):
    """折扣当前不可用时尝试使用"""

    error_code = "usage_limit_exceeded"
    status_code = 409

    def __init__(
        self,
        discount_id: str,
        usage_count: int,
        usage_limit: Optional[int],
        reason: Optional[str] = None
    ):
        super().__init__(
            f"折扣不可使用: {reason or 'usage_limit_reached'}",
            details={
                "discount_id": discount_id,
                "usage_count": usage_count,
                "usage_limit": usage_limit,
                "reason": reason
            }
        )
        self.discount_id = discount_id
        self.usage_count = usage_count
        self.usage_limit = usage_limit
        self.reason = reason


class CyclicParentError(DiscountError):
    """父折扣链存在环"""

    error_code = "cyclic_parent"

    def __init__(self, discount_id: str, chain: List[str]):
        super().__init__(
            "父折扣引用存在循环: " + " -> ".join([discount_id] + chain),
            details={"discount_id": discount_id, "chain": chain}
        )
        self.discount_id = discount_id
        self.chain = chain


class DuplicateDiscountCodeError(DiscountError):
    """未删除的折扣中已存在相同代码"""

    error_code = "duplicate_code"
    status_code = 409

    def __init__(self, code: str):
        super().__init__(f"折扣代码已存在: {code}", details={"code": code})
        self.code = code


class DiscountNotFoundError(DiscountError):
    """折扣不存在或已删除"""

    error_code = "discount_not_found"
    status_code = 404

    def __init__(self, identifier: str):
        super().__init__(f"折扣不存在: {identifier}", details={"identifier": identifier})
        self.identifier = identifier


class DiscountConflictError(DiscountError):
    """并发更新使用次数失败"""

    error_code = "concurrent_update"
    status_code = 409

    def __init__(self, discount_id: str, attempts: int):
        super().__init__(
            f"折扣使用次数并发更新失败，已重试{attempts}次",
            details={"discount_id": discount_id, "attempts": attempts}
        )
        self.discount_id = discount_id
        self.attempts = attempts


class DiscountValidationError(DiscountError):
    """折扣整体校验失败，包含全部错误"""

    error_code = "validation_failed"
    status_code = 422

    def __init__(self, errors: List[DiscountError]):
        super().__init__(
            "；".join(error.message for error in errors),
            details={
                "errors": [
                    {"error_code": error.error_code, "message": error.message}
                    for error in errors
                ]
            }
        )
        self.errors = errors

    @property
    def error_codes(self) -> List[str]:
        return [error.error_code for error in self.errors]
