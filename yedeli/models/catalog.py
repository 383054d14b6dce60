"""
菜品与批次数据模型
"""

from pydantic import Field, computed_field, field_validator
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from enum import Enum

from .base import BaseEntity, TimestampMixin, quantize_money
from ..utils.time import ensure_aware


class CuisineType(str, Enum):
    """菜系枚举"""
    ITALIAN = "italian"
    INDIAN = "indian"
    KOREAN = "korean"
    CHINESE = "chinese"
    TURKISH = "turkish"
    MIDDLE_EASTERN = "middle_eastern"
    MEXICAN = "mexican"
    THAI = "thai"
    JAPANESE = "japanese"
    SWISS = "swiss"
    MEDITERRANEAN = "mediterranean"
    AFRICAN = "african"
    CARIBBEAN = "caribbean"
    VIETNAMESE = "vietnamese"
    SPANISH = "spanish"


class BatchStatus(str, Enum):
    """批次状态枚举"""
    SCHEDULED = "scheduled"       # 已排期，接受下单
    IN_PROGRESS = "in_progress"   # 制作中
    READY = "ready"               # 可取餐
    COMPLETED = "completed"       # 已完成
    CANCELLED = "cancelled"       # 已取消

    @property
    def is_closed(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.CANCELLED)


# 批次状态流转
BATCH_TRANSITIONS = {
    BatchStatus.SCHEDULED: {BatchStatus.IN_PROGRESS, BatchStatus.CANCELLED},
    BatchStatus.IN_PROGRESS: {BatchStatus.READY, BatchStatus.CANCELLED},
    BatchStatus.READY: {BatchStatus.COMPLETED, BatchStatus.CANCELLED},
    BatchStatus.COMPLETED: set(),
    BatchStatus.CANCELLED: set(),
}


class Dish(BaseEntity, TimestampMixin):
    """菜品"""
    id: str = Field(..., description="菜品ID")
    cook_id: str = Field(..., description="所属厨师")
    name: str = Field(..., max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    price: Decimal = Field(..., gt=0, description="单价")
    cuisine: CuisineType
    image_url: Optional[str] = Field(None, max_length=500)
    dietary_tags: List[str] = Field(default_factory=list, description="饮食标签，如 vegetarian、halal")
    ingredients: List[str] = Field(default_factory=list)
    allergens: List[str] = Field(default_factory=list, description="过敏原")
    preparation_time: int = Field(0, ge=0, description="准备时间（分钟）")
    is_active: bool = True

    @field_validator("price")
    @classmethod
    def _two_decimals(cls, v):
        return quantize_money(v)

    @field_validator("dietary_tags", "ingredients", "allergens", mode="before")
    @classmethod
    def _none_as_empty(cls, v):
        return v or []


class Batch(BaseEntity, TimestampMixin):
    """批次（一次限量出餐）"""
    id: str = Field(..., description="批次ID")
    dish_id: str
    cook_id: str
    scheduled_date: datetime
    pickup_date: datetime
    cutoff_date: datetime
    capacity: int = Field(..., gt=0)
    current_orders: int = Field(0, ge=0)
    status: BatchStatus = BatchStatus.SCHEDULED
    is_active: bool = True
    version: int = 0

    @field_validator("scheduled_date", "pickup_date", "cutoff_date")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v)

    @computed_field
    @property
    def remaining_capacity(self) -> int:
        """剩余可订数量（仅供展示，以服务端校验为准）"""
        return max(0, self.capacity - self.current_orders)

    @property
    def is_full(self) -> bool:
        return self.current_orders >= self.capacity

    def cutoff_passed(self, now: datetime) -> bool:
        return now >= self.cutoff_date


class CookStats(BaseEntity):
    """厨师汇总数据"""
    cook_id: str
    total_orders: int = 0
    rating_sum: int = 0
    rating_count: int = 0

    @computed_field
    @property
    def rating(self) -> Optional[Decimal]:
        if not self.rating_count:
            return None
        return (Decimal(self.rating_sum) / Decimal(self.rating_count)).quantize(Decimal("0.01"))
