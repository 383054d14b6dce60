"""
支付记录数据模型
"""

from pydantic import Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional
from enum import Enum

from .base import BaseEntity, quantize_money
from ..utils.time import ensure_aware


class PaymentOutcome(str, Enum):
    """支付网关回调结果"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class Payment(BaseEntity):
    """
    一次支付回调

    网关的每次回调都会留下一条记录，applied 表示这次回调是否推动了订单状态
    （重复回调、与订单当前状态冲突的回调为 False）。
    """
    id: str
    order_id: str
    buyer_id: str
    amount: Decimal = Field(..., ge=0)
    currency: str = Field(..., min_length=3, max_length=3)
    payment_method: str
    gateway_reference: Optional[str] = None
    status: PaymentOutcome
    applied: bool
    created_at: datetime

    @field_validator("amount")
    @classmethod
    def _two_decimals(cls, v):
        return quantize_money(v)

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v)
