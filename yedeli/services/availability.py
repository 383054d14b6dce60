"""
可订性判断
纯函数：根据批次快照、请求数量和当前时间判断能否预留容量。
不读库、不写库，可以重复调用。

判断顺序：
1. 批次已停用 / 已取消 / 已完成 -> BatchUnavailable
2. 已过截单时间                 -> CutoffPassed
3. 数量小于 1                   -> InvalidQuantity
4. 当前占用 + 数量 > 容量        -> CapacityExceeded
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..core.exceptions import (
    BatchUnavailableError,
    CapacityExceededError,
    CutoffPassedError,
    InvalidQuantityError,
)
from ..models.catalog import Batch


class RejectReason(str, Enum):
    BATCH_UNAVAILABLE = "BatchUnavailable"
    CUTOFF_PASSED = "CutoffPassed"
    INVALID_QUANTITY = "InvalidQuantity"
    CAPACITY_EXCEEDED = "CapacityExceeded"


_REASON_ERRORS = {
    RejectReason.BATCH_UNAVAILABLE: (BatchUnavailableError, "批次当前不可下单"),
    RejectReason.CUTOFF_PASSED: (CutoffPassedError, "已过截单时间"),
    RejectReason.INVALID_QUANTITY: (InvalidQuantityError, "订单数量必须为正整数"),
    RejectReason.CAPACITY_EXCEEDED: (CapacityExceededError, "批次容量不足"),
}


@dataclass(frozen=True)
class AvailabilityResult:
    ok: bool
    reason: Optional[RejectReason] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def raise_for_reason(self):
        """不可订时抛出对应的业务异常"""
        if self.ok:
            return
        error_cls, message = _REASON_ERRORS[self.reason]
        raise error_cls(message, details=self.details)


OK = AvailabilityResult(ok=True)


def remaining_capacity(batch: Batch) -> int:
    """剩余容量，不小于0"""
    return max(0, batch.capacity - batch.current_orders)


def can_reserve(batch: Batch, quantity: Any, now: datetime) -> AvailabilityResult:
    if not batch.is_active or batch.status.is_closed:
        return AvailabilityResult(False, RejectReason.BATCH_UNAVAILABLE, {
            "batch_id": batch.id,
            "status": batch.status.value,
            "is_active": batch.is_active,
        })

    if not now < batch.cutoff_date:
        return AvailabilityResult(False, RejectReason.CUTOFF_PASSED, {
            "batch_id": batch.id,
            "cutoff_date": batch.cutoff_date.isoformat(),
        })

    # bool 是 int 的子类，需要单独排除
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        return AvailabilityResult(False, RejectReason.INVALID_QUANTITY, {
            "quantity": quantity,
        })

    if batch.current_orders + quantity > batch.capacity:
        return AvailabilityResult(False, RejectReason.CAPACITY_EXCEEDED, {
            "batch_id": batch.id,
            "requested": quantity,
            "remaining": remaining_capacity(batch),
        })

    return OK
