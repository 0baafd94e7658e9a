"""
折扣校验与规范化 - 纯函数，不涉及数据库和缓存

校验函数返回错误对象而不是抛出异常，由调用方汇总全部错误后整体拒绝记录。
normalize_code 和 record_usage 是状态转换函数，失败时直接抛出异常。
"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, Optional, Union

from app.core.clock import utc_now, ensure_utc
from app.core.config import settings
from app.core.exceptions import (
    DiscountError,
    InvalidCodeError,
    InvalidCommissionError,
    InvalidWindowError,
    InvalidUsageLimitError,
    UsageLimitExceededError,
    CyclicParentError
)
from app.models.discount import DiscountRecord

# 祖先查询函数: parent_discount_id -> DiscountRecord (不存在时返回None)
AncestorLookup = Callable[[str], Optional[DiscountRecord]]

COMMISSION_MIN = Decimal("0")
COMMISSION_MAX = Decimal("100")
CENT = Decimal("0.01")

# 不可用原因
REASON_DELETED = "deleted"
REASON_DISABLED = "disabled"
REASON_NOT_STARTED = "not_started"
REASON_EXPIRED = "expired"
REASON_USAGE_LIMIT_REACHED = "usage_limit_reached"
REASON_INVALID_WINDOW = "invalid_window"

UNUSABLE_REASON_MESSAGES = {
    REASON_DELETED: "折扣已删除",
    REASON_DISABLED: "折扣已停用",
    REASON_NOT_STARTED: "折扣尚未开始使用",
    REASON_EXPIRED: "折扣已过期",
    REASON_USAGE_LIMIT_REACHED: "折扣使用次数已达上限",
    REASON_INVALID_WINDOW: "折扣有效期无效",
}


def _to_decimal(value: Union[Decimal, int, float, str]) -> Decimal:
    if isinstance(value, Decimal):
        return value
    # float 先转字符串，避免二进制误差
    return Decimal(str(value))


def normalize_code(raw: Optional[str]) -> str:
    """
    规范化折扣代码：去除首尾空白并转为大写

    Args:
        raw: 原始折扣代码

    Returns:
        规范化后的代码

    Raises:
        InvalidCodeError: 规范化后为空
    """
    if raw is None:
        raise InvalidCodeError(raw)

    code = raw.strip().upper()
    if not code:
        raise InvalidCodeError(raw)
    return code


def normalize_record(record: DiscountRecord) -> DiscountRecord:
    """返回代码已规范化的记录副本，持久化前必须调用"""
    code = normalize_code(record.code)
    if code == record.code:
        return record
    return record.model_copy(update={"code": code})


def validate_code(raw: Optional[str], max_length: Optional[int] = None) -> Optional[InvalidCodeError]:
    """验证代码规范化后非空且不超过长度上限(大写转换可能使代码变长)"""
    if max_length is None:
        max_length = settings.discount_code_max_length

    try:
        code = normalize_code(raw)
    except InvalidCodeError as e:
        return e

    if len(code) > max_length:
        return InvalidCodeError(raw, max_length=max_length)
    return None


def validate_commission_percentage(
    value: Optional[Union[Decimal, int, float]]
) -> Optional[InvalidCommissionError]:
    """验证佣金比例，为空或在 [0, 100] 内时通过"""
    if value is None:
        return None

    percentage = _to_decimal(value)
    if percentage.is_nan() or not COMMISSION_MIN <= percentage <= COMMISSION_MAX:
        return InvalidCommissionError(percentage)
    return None


def validate_validity_window(
    starts_at: datetime,
    ends_at: Optional[datetime]
) -> Optional[InvalidWindowError]:
    """验证有效期，结束时间为空或不早于开始时间时通过"""
    if ends_at is None or ensure_utc(ends_at) >= ensure_utc(starts_at):
        return None
    return InvalidWindowError(starts_at, ends_at)


def validate_usage_limit(
    usage_limit: Optional[int],
    usage_count: int
) -> Optional[InvalidUsageLimitError]:
    """验证使用次数上限不低于已使用次数"""
    if usage_limit is not None and usage_count > usage_limit:
        return InvalidUsageLimitError(usage_limit, usage_count)
    return None


def get_unusable_reason(record: DiscountRecord, now: datetime) -> Optional[str]:
    """返回折扣当前不可用的原因，可用时返回None"""
    if record.deleted_at is not None:
        return REASON_DELETED
    if record.is_disabled:
        return REASON_DISABLED

    now = ensure_utc(now)
    starts_at = ensure_utc(record.starts_at)
    ends_at = ensure_utc(record.ends_at)

    if ends_at is not None and ends_at < starts_at:
        return REASON_INVALID_WINDOW
    if now < starts_at:
        return REASON_NOT_STARTED
    if ends_at is not None and now > ends_at:
        return REASON_EXPIRED

    if record.usage_limit is not None and record.usage_count >= record.usage_limit:
        return REASON_USAGE_LIMIT_REACHED
    return None


def is_usable(record: DiscountRecord, now: datetime) -> bool:
    """检查折扣在指定时间是否可用，永不抛出异常"""
    return get_unusable_reason(record, now) is None


def is_usable_by(record: DiscountRecord, user_id: Optional[str], now: datetime) -> bool:
    """检查折扣对指定用户是否可用(专属折扣只允许对应用户使用)"""
    if record.user_id is not None and record.user_id != user_id:
        return False
    return is_usable(record, now)


def record_usage(record: DiscountRecord, now: Optional[datetime] = None) -> DiscountRecord:
    """
    记录一次使用，返回使用次数+1的新记录

    并发安全由持久化层负责(对使用次数做CAS更新)。

    Raises:
        UsageLimitExceededError: 折扣当前不可用
    """
    if now is None:
        now = utc_now()

    reason = get_unusable_reason(record, now)
    if reason is not None:
        raise UsageLimitExceededError(
            record.discount_id,
            record.usage_count,
            record.usage_limit,
            reason=reason
        )

    return record.model_copy(update={"usage_count": record.usage_count + 1})


def validate_no_cycle(
    record: DiscountRecord,
    ancestor_lookup: Optional[AncestorLookup] = None,
    max_depth: Optional[int] = None
) -> Optional[CyclicParentError]:
    """
    沿父折扣链向上遍历，检查是否存在循环引用

    Args:
        record: 待检查的折扣
        ancestor_lookup: 根据ID查询祖先折扣，为空时只检查自引用
        max_depth: 最大遍历深度，超出视为循环

    Returns:
        存在循环时返回CyclicParentError，否则返回None
    """
    visited = {record.discount_id}
    chain: List[str] = []
    current_id = record.parent_discount_id

    while current_id is not None:
        chain.append(current_id)
        if current_id in visited:
            return CyclicParentError(record.discount_id, chain)
        if max_depth is not None and len(chain) > max_depth:
            return CyclicParentError(record.discount_id, chain)
        visited.add(current_id)

        parent = ancestor_lookup(current_id) if ancestor_lookup else None
        if parent is None:
            break
        current_id = parent.parent_discount_id

    return None


def validate_discount(
    record: DiscountRecord,
    ancestor_lookup: Optional[AncestorLookup] = None,
    max_depth: Optional[int] = None
) -> List[DiscountError]:
    """执行全部校验并汇总错误，返回空列表表示校验通过"""
    errors: List[DiscountError] = []

    for error in (
        validate_code(record.code),
        validate_commission_percentage(record.commission_percentage),
        validate_validity_window(record.starts_at, record.ends_at),
        validate_usage_limit(record.usage_limit, record.usage_count),
        validate_no_cycle(record, ancestor_lookup, max_depth),
    ):
        if error is not None:
            errors.append(error)

    return errors


def calculate_commission(
    sale_amount: Decimal,
    commission_percentage: Optional[Union[Decimal, int, float]]
) -> Decimal:
    """计算佣金金额，保留两位小数"""
    if commission_percentage is None:
        return Decimal("0.00")

    amount = _to_decimal(sale_amount) * _to_decimal(commission_percentage) / Decimal("100")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)
