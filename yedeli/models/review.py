"""
评价数据模型
"""

from pydantic import Field, field_validator
from datetime import datetime
from typing import Optional

from .base import BaseEntity
from ..utils.time import ensure_aware


class Review(BaseEntity):
    """订单评价"""
    order_id: str
    buyer_id: str
    cook_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _aware(cls, v):
        return ensure_aware(v)
