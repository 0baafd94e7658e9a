"""
折扣校验与规范化纯函数测试
"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from app.core.exceptions import (
    InvalidCodeError,
    InvalidCommissionError,
    InvalidWindowError,
    InvalidUsageLimitError,
    UsageLimitExceededError,
    CyclicParentError
)
from app.models.discount import DiscountRecord
from app.services.discount_validator import (
    normalize_code,
    normalize_record,
    validate_commission_percentage,
    validate_validity_window,
    validate_code,
    validate_usage_limit,
    get_unusable_reason,
    is_usable,
    is_usable_by,
    record_usage,
    validate_no_cycle,
    validate_discount,
    calculate_commission
)


def make_discount(**overrides) -> DiscountRecord:
    data = {
        "discount_id": "d1",
        "code": "SAVE10",
        "starts_at": datetime(2024, 6, 1, 12, 0, 0),
    }
    data.update(overrides)
    return DiscountRecord(**data)


class TestNormalizeCode:
    """折扣代码规范化测试"""

    def test_trim_and_upper(self):
        """测试去空格并转大写"""
        assert normalize_code("  save10 ") == "SAVE10"

    @pytest.mark.parametrize("raw", ["abc", " MiXeD ", "\tpromo-1\n", "ß-code", "已经 大写 "])
    def test_result_is_upper_and_trimmed_and_idempotent(self, raw):
        """测试结果为大写无首尾空白且幂等"""
        code = normalize_code(raw)
        assert code == code.upper()
        assert code == code.strip()
        assert normalize_code(code) == code

    @pytest.mark.parametrize("raw", ["", "   ", "\t\n", None])
    def test_empty_code_rejected(self, raw):
        """测试空代码被拒绝"""
        with pytest.raises(InvalidCodeError) as exc_info:
            normalize_code(raw)
        assert exc_info.value.error_code == "invalid_code"

    def test_normalize_record_returns_copy(self):
        """测试记录规范化返回新副本"""
        record = make_discount(code=" promo1 ")
        normalized = normalize_record(record)

        assert normalized.code == "PROMO1"
        assert record.code == " promo1 "

    def test_normalize_record_already_normalized(self):
        """测试已规范化记录原样返回"""
        record = make_discount()
        assert normalize_record(record) is record


class TestCodeLength:
    """规范化后代码长度校验测试"""

    def test_surrounding_whitespace_not_counted(self):
        """测试首尾空白不计入长度"""
        assert validate_code("   " + "x" * 50 + "   ") is None

    def test_too_long_after_normalization(self):
        """测试大写转换后变长的代码被拒绝"""
        raw = "ß" * 26
        error = validate_code(raw)

        assert isinstance(error, InvalidCodeError)
        assert error.max_length == 50
        assert error.raw_code == raw

    def test_custom_max_length(self):
        assert validate_code("abcd", max_length=3).error_code == "invalid_code"
        assert validate_code(" abc ", max_length=3) is None

    def test_blank_code(self):
        error = validate_code("  ")
        assert isinstance(error, InvalidCodeError)
        assert error.max_length is None


class TestUsageLimit:
    """使用次数上限校验测试"""

    @pytest.mark.parametrize("usage_limit, usage_count", [(None, 100), (5, 5), (5, 0), (0, 0)])
    def test_valid(self, usage_limit, usage_count):
        assert validate_usage_limit(usage_limit, usage_count) is None

    def test_limit_below_count(self):
        """测试上限低于已使用次数"""
        error = validate_usage_limit(1, 3)

        assert isinstance(error, InvalidUsageLimitError)
        assert error.error_code == "invalid_usage_limit"
        assert error.details == {"usage_limit": 1, "usage_count": 3}


class TestCommissionPercentage:
    """佣金比例校验测试"""

    @pytest.mark.parametrize("value", [0, 100, None, Decimal("55.55"), 0.5])
    def test_valid_values(self, value):
        """测试合法佣金比例"""
        assert validate_commission_percentage(value) is None

    @pytest.mark.parametrize("value", [-0.01, 100.01, Decimal("-1"), Decimal("1000")])
    def test_invalid_values(self, value):
        """测试越界佣金比例"""
        error = validate_commission_percentage(value)
        assert isinstance(error, InvalidCommissionError)
        assert error.value == Decimal(str(value))

    def test_nan_rejected(self):
        """测试NaN被拒绝"""
        assert isinstance(validate_commission_percentage(Decimal("NaN")), InvalidCommissionError)


class TestValidityWindow:
    """有效期校验测试"""

    def test_open_ended(self, base_time):
        assert validate_validity_window(base_time, None) is None

    def test_equal_bounds_allowed(self, base_time):
        assert validate_validity_window(base_time, base_time) is None

    def test_end_after_start(self, base_time):
        assert validate_validity_window(base_time, base_time + timedelta(seconds=1)) is None

    def test_end_before_start(self, base_time):
        """测试结束时间早于开始时间"""
        error = validate_validity_window(base_time, base_time - timedelta(seconds=1))
        assert isinstance(error, InvalidWindowError)

    def test_mixed_timestamps_compared_as_utc(self, base_time):
        """测试naive时间按UTC与aware时间比较"""
        assert validate_validity_window(base_time, datetime(2024, 7, 1, tzinfo=timezone.utc)) is None

        # 2024-06-01 15:00+08:00 即 07:00 UTC，早于 12:00 UTC 的开始时间
        east = timezone(timedelta(hours=8))
        early_end = datetime(2024, 6, 1, 15, 0, 0, tzinfo=east)
        assert isinstance(validate_validity_window(base_time, early_end), InvalidWindowError)


class TestIsUsable:
    """可用性判断测试"""

    def test_usable_inside_window(self, sample_discount, base_time):
        assert is_usable(sample_discount, base_time + timedelta(hours=1)) is True

    def test_window_bounds_inclusive(self, sample_discount):
        assert is_usable(sample_discount, sample_discount.starts_at) is True
        assert is_usable(sample_discount, sample_discount.ends_at) is True

    def test_disabled_never_usable(self, sample_discount, base_time):
        """测试停用的折扣无论其他字段如何都不可用"""
        disabled = sample_discount.model_copy(update={"is_disabled": True})
        assert is_usable(disabled, base_time + timedelta(hours=1)) is False
        assert get_unusable_reason(disabled, base_time + timedelta(hours=1)) == "disabled"

    def test_before_start(self, sample_discount, base_time):
        assert is_usable(sample_discount, base_time - timedelta(seconds=1)) is False
        assert get_unusable_reason(sample_discount, base_time - timedelta(seconds=1)) == "not_started"

    def test_after_end(self, sample_discount):
        after = sample_discount.ends_at + timedelta(seconds=1)
        assert is_usable(sample_discount, after) is False
        assert get_unusable_reason(sample_discount, after) == "expired"

    def test_open_ended_window(self, base_time):
        record = make_discount(ends_at=None)
        assert is_usable(record, base_time + timedelta(days=3650)) is True

    def test_usage_limit_zero_never_usable(self, base_time):
        """测试使用次数上限为0的折扣永远不可用"""
        record = make_discount(usage_limit=0)
        assert is_usable(record, base_time + timedelta(hours=1)) is False

    def test_usage_limit_reached(self, base_time):
        record = make_discount(usage_limit=3, usage_count=3)
        assert get_unusable_reason(record, base_time) == "usage_limit_reached"

    def test_unlimited_usage(self, base_time):
        record = make_discount(usage_limit=None, usage_count=10_000)
        assert is_usable(record, base_time) is True

    def test_soft_deleted_not_usable(self, sample_discount, base_time):
        deleted = sample_discount.model_copy(update={"deleted_at": base_time})
        assert get_unusable_reason(deleted, base_time + timedelta(hours=1)) == "deleted"

    def test_malformed_window_returns_false(self, base_time):
        """测试结束早于开始的记录返回False而不抛异常"""
        record = make_discount(ends_at=base_time - timedelta(days=1))
        assert is_usable(record, base_time) is False
        assert is_usable(record, base_time - timedelta(hours=12)) is False
        assert get_unusable_reason(record, base_time) == "invalid_window"

    def test_aware_record_with_current_time(self):
        """测试数据库读出的aware时间与当前时间可以正常比较"""
        now_utc = datetime.now(timezone.utc)
        record = make_discount(starts_at=now_utc - timedelta(days=1), ends_at=now_utc + timedelta(days=1))

        assert is_usable(record, now_utc) is True
        assert get_unusable_reason(record, now_utc.replace(tzinfo=None)) is None

    def test_now_in_other_timezone(self, sample_discount):
        """测试其他时区的当前时间换算为UTC后判断"""
        east = timezone(timedelta(hours=8))
        # 2024-06-01 19:00+08:00 即 11:00 UTC，早于开始时间
        assert get_unusable_reason(sample_discount, datetime(2024, 6, 1, 19, 0, 0, tzinfo=east)) == "not_started"
        assert is_usable(sample_discount, datetime(2024, 6, 1, 21, 0, 0, tzinfo=east)) is True

    def test_naive_timestamps_stored_as_utc(self, sample_discount):
        assert sample_discount.starts_at.tzinfo is timezone.utc
        assert sample_discount.ends_at.tzinfo is timezone.utc

    def test_user_scoped_discount(self, base_time):
        """测试专属用户折扣"""
        record = make_discount(user_id="user_001")
        now = base_time + timedelta(hours=1)

        assert is_usable_by(record, "user_001", now) is True
        assert is_usable_by(record, "user_002", now) is False
        assert is_usable_by(record, None, now) is False
        assert is_usable_by(make_discount(), "anyone", now) is True


class TestRecordUsage:
    """使用次数状态转换测试"""

    def test_limit_reached_raises(self, base_time):
        """测试达到上限时使用失败"""
        record = make_discount(usage_limit=3, usage_count=3)

        with pytest.raises(UsageLimitExceededError) as exc_info:
            record_usage(record, base_time + timedelta(hours=1))

        assert exc_info.value.reason == "usage_limit_reached"
        assert exc_info.value.usage_count == 3
        assert exc_info.value.usage_limit == 3

    def test_last_use_succeeds(self, base_time):
        """测试最后一次使用成功"""
        record = make_discount(usage_limit=3, usage_count=2)
        updated = record_usage(record, base_time + timedelta(hours=1))

        assert updated.usage_count == 3
        assert record.usage_count == 2

    def test_disabled_raises(self, base_time):
        record = make_discount(is_disabled=True)
        with pytest.raises(UsageLimitExceededError) as exc_info:
            record_usage(record, base_time)
        assert exc_info.value.reason == "disabled"

    def test_default_now(self):
        record = make_discount(starts_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        assert record_usage(record).usage_count == 1

    def test_default_now_with_aware_window(self):
        """测试带时区的有效期在默认当前时间下可以使用"""
        now_utc = datetime.now(timezone.utc)
        record = make_discount(
            starts_at=now_utc - timedelta(days=1),
            ends_at=now_utc + timedelta(days=1),
            usage_limit=1
        )

        updated = record_usage(record)

        assert updated.usage_count == 1
        with pytest.raises(UsageLimitExceededError) as exc_info:
            record_usage(updated)
        assert exc_info.value.reason == "usage_limit_reached"


class TestValidateNoCycle:
    """父折扣循环检查测试"""

    def test_no_parent(self):
        assert validate_no_cycle(make_discount()) is None

    def test_self_reference(self):
        """测试自引用被拒绝"""
        record = make_discount(discount_id="d1", parent_discount_id="d1")
        error = validate_no_cycle(record)

        assert isinstance(error, CyclicParentError)
        assert error.chain == ["d1"]

    def test_acyclic_chain(self):
        ancestors = {
            "d2": make_discount(discount_id="d2", parent_discount_id="d3"),
            "d3": make_discount(discount_id="d3"),
        }
        record = make_discount(discount_id="d1", parent_discount_id="d2")
        assert validate_no_cycle(record, ancestors.get) is None

    def test_cycle_through_ancestors(self):
        """测试经过祖先回到自身的循环"""
        ancestors = {
            "d2": make_discount(discount_id="d2", parent_discount_id="d3"),
            "d3": make_discount(discount_id="d3", parent_discount_id="d1"),
        }
        record = make_discount(discount_id="d1", parent_discount_id="d2")
        error = validate_no_cycle(record, ancestors.get)

        assert isinstance(error, CyclicParentError)
        assert error.chain == ["d2", "d3", "d1"]

    def test_cycle_among_ancestors(self):
        """测试祖先之间的循环也能终止并报告"""
        ancestors = {
            "d2": make_discount(discount_id="d2", parent_discount_id="d3"),
            "d3": make_discount(discount_id="d3", parent_discount_id="d2"),
        }
        record = make_discount(discount_id="d1", parent_discount_id="d2")
        assert isinstance(validate_no_cycle(record, ancestors.get), CyclicParentError)

    def test_missing_ancestor_ends_chain(self):
        record = make_discount(discount_id="d1", parent_discount_id="missing")
        assert validate_no_cycle(record, lambda _: None) is None

    def test_max_depth_exceeded(self):
        ancestors = {
            f"d{i}": make_discount(discount_id=f"d{i}", parent_discount_id=f"d{i + 1}")
            for i in range(2, 10)
        }
        record = make_discount(discount_id="d1", parent_discount_id="d2")

        assert validate_no_cycle(record, ancestors.get) is None
        assert isinstance(validate_no_cycle(record, ancestors.get, max_depth=3), CyclicParentError)


class TestValidateDiscount:
    """组合校验测试"""

    def test_valid_record(self, sample_discount):
        assert validate_discount(sample_discount) == []

    def test_collects_all_errors(self, base_time):
        """测试汇总全部错误而不是遇到第一个就停止"""
        record = make_discount(
            code="   ",
            commission_percentage=Decimal("150"),
            ends_at=base_time - timedelta(days=1),
            usage_limit=1,
            usage_count=2,
            parent_discount_id="d1"
        )
        errors = validate_discount(record)

        assert [type(error) for error in errors] == [
            InvalidCodeError,
            InvalidCommissionError,
            InvalidWindowError,
            InvalidUsageLimitError,
            CyclicParentError
        ]


class TestCalculateCommission:
    """佣金计算测试"""

    def test_rounding(self):
        assert calculate_commission(Decimal("99.99"), Decimal("12.5")) == Decimal("12.50")
        assert calculate_commission(Decimal("10.05"), Decimal("50")) == Decimal("5.03")

    def test_no_percentage(self):
        assert calculate_commission(Decimal("100"), None) == Decimal("0.00")


class TestDiscountLifecycle:
    """端到端生命周期测试"""

    def test_single_use_discount(self, base_time):
        """测试单次使用折扣的完整流程"""
        record = DiscountRecord(
            discount_id="promo_001",
            code=" promo1 ",
            starts_at=base_time,
            ends_at=base_time + timedelta(days=1),
            usage_limit=1,
            usage_count=0,
            is_disabled=False
        )

        record = normalize_record(record)
        assert record.code == "PROMO1"

        now = base_time + timedelta(hours=1)
        assert is_usable(record, now) is True

        record = record_usage(record, now)
        assert record.usage_count == 1

        assert is_usable(record, now) is False
        with pytest.raises(UsageLimitExceededError):
            record_usage(record, now)
