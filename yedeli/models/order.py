"""
订单相关数据模型
"""

from pydantic import Field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import Optional
from enum import Enum

from .base import BaseEntity, TimestampMixin, quantize_money
from ..utils.time import ensure_aware


class OrderStatus(str, Enum):
    """订单状态枚举"""
    PENDING = "pending"         # 待确认（等待支付/厨师确认）
    CONFIRMED = "confirmed"     # 已确认
    PREPARING = "preparing"     # 制作中
    READY = "ready"             # 可取餐
    COMPLETED = "completed"     # 已完成
    CANCELLED = "cancelled"     # 已取消
    REFUNDED = "refunded"       # 已退款

    @property
    def releases_capacity(self) -> bool:
        """进入该状态时归还批次容量"""
        return self in (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


# 占用容量的状态（completed 也算已售出）
RESERVING_STATUSES = (
    OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PREPARING,
    OrderStatus.READY, OrderStatus.COMPLETED,
)

# 合法的状态流转
ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.CONFIRMED: {OrderStatus.PREPARING, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.PREPARING: {OrderStatus.READY, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.READY: {OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}


class Order(BaseEntity, TimestampMixin):
    """订单完整模型"""
    id: str = Field(..., description="订单ID")
    buyer_id: str = Field(..., description="买家ID")
    batch_id: str = Field(..., description="批次ID")
    dish_id: str = Field(..., description="菜品ID（冗余，便于展示）")
    quantity: int = Field(..., ge=1, description="数量")
    unit_price: Decimal = Field(..., description="下单时的单价快照")
    total_price: Decimal = Field(..., description="总价")
    status: OrderStatus = Field(OrderStatus.PENDING, description="订单状态")
    pickup_code: Optional[str] = Field(None, description="取餐码，确认时生成")
    special_instructions: Optional[str] = Field(None, max_length=500, description="买家备注")
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @field_validator("unit_price", "total_price")
    @classmethod
    def _two_decimals(cls, v):
        return quantize_money(v)

    @field_validator("confirmed_at", "completed_at", "cancelled_at")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v)


class OrderEvent(BaseEntity):
    """订单状态变更记录"""
    order_id: str
    from_status: Optional[OrderStatus] = None
    to_status: OrderStatus
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v)
