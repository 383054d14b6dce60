"""
订单相关的请求模式
"""

from pydantic import BaseModel, Field
from typing import Any, Optional
from ..models.order import OrderStatus


class OrderCreateRequest(BaseModel):
    """订单创建请求"""
    batch_id: str = Field(..., description="批次ID")
    # 不在这里限定类型：小数、字符串等都交给下单引擎，统一返回 INVALID_QUANTITY
    quantity: Any = Field(..., description="数量，正整数")
    special_instructions: Optional[str] = Field(None, max_length=500, description="备注")

    model_config = {
        "json_schema_extra": {
            "example": {"batch_id": "5f0c...", "quantity": 2, "special_instructions": "少辣"}
        }
    }


class OrderTransitionRequest(BaseModel):
    """订单状态变更请求"""
    status: OrderStatus = Field(..., description="目标状态")


class ReviewCreateRequest(BaseModel):
    """评价请求"""
    rating: int = Field(..., description="评分 1-5")
    comment: Optional[str] = Field(None, max_length=1000)
