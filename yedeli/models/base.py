"""
基础数据模型
定义通用的模型基类、时间戳字段和金额处理
"""

from decimal import Decimal, ROUND_HALF_UP
from pydantic import BaseModel, field_validator
from datetime import datetime
from typing import Optional, Union

from ..utils.time import ensure_aware

CENT = Decimal("0.01")


def quantize_money(value: Union[Decimal, int, str, float]) -> Decimal:
    """金额统一保留两位小数"""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class BaseEntity(BaseModel):
    """基础实体模型"""

    model_config = {"from_attributes": True}


class TimestampMixin(BaseModel):
    """时间戳混入类"""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def _aware_timestamps(cls, v):
        return ensure_aware(v)
