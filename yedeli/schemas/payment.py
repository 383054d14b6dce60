"""
支付回调请求模式
"""

from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional

from ..models.payment import PaymentOutcome


class PaymentCallbackRequest(BaseModel):
    """支付网关回调"""
    order_id: str = Field(..., description="订单ID")
    outcome: PaymentOutcome = Field(..., description="扣款结果")
    amount: Optional[Decimal] = Field(None, ge=0, description="金额，缺省为订单总价")
    currency: Optional[str] = Field(None, pattern=r"^[A-Za-z]{3}$", description="币种")
    payment_method: str = Field("card", max_length=50, description="支付方式")
    gateway_reference: Optional[str] = Field(None, max_length=255, description="网关流水号")
