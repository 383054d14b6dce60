"""
菜品与批次相关的请求模式
"""

from pydantic import AwareDatetime, BaseModel, Field
from decimal import Decimal
from typing import List, Optional

from ..models.catalog import BatchStatus, CuisineType


class DishCreateRequest(BaseModel):
    """菜品创建请求"""
    name: str = Field(..., min_length=1, max_length=200, description="菜品名称")
    price: Decimal = Field(..., gt=0, description="单价，两位小数")
    cuisine: CuisineType = Field(..., description="菜系")
    description: Optional[str] = Field(None, max_length=2000, description="描述")
    image_url: Optional[str] = Field(None, max_length=500, description="图片地址")
    dietary_tags: List[str] = Field(default_factory=list, description="饮食标签")
    ingredients: List[str] = Field(default_factory=list, description="主要食材")
    allergens: List[str] = Field(default_factory=list, description="过敏原")
    preparation_time: int = Field(0, ge=0, description="准备时间（分钟）")

    model_config = {
        "json_schema_extra": {
            "example": {
                "name": "红烧肉",
                "price": "12.50",
                "cuisine": "chinese",
                "description": "每周三限量供应",
                "dietary_tags": ["halal"],
                "ingredients": ["五花肉", "冰糖", "酱油"],
                "allergens": ["soy"],
                "preparation_time": 90,
            }
        }
    }


class DishUpdateRequest(BaseModel):
    """菜品修改请求，只修改传入的字段"""
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    price: Optional[Decimal] = Field(None, gt=0)
    cuisine: Optional[CuisineType] = None
    description: Optional[str] = Field(None, max_length=2000)
    is_active: Optional[bool] = None
    image_url: Optional[str] = Field(None, max_length=500)
    dietary_tags: Optional[List[str]] = None
    ingredients: Optional[List[str]] = None
    allergens: Optional[List[str]] = None
    preparation_time: Optional[int] = Field(None, ge=0)


class BatchCreateRequest(BaseModel):
    """批次创建请求，时间必须带时区"""
    dish_id: str = Field(..., description="菜品ID")
    scheduled_date: AwareDatetime = Field(..., description="制作时间")
    pickup_date: AwareDatetime = Field(..., description="取餐时间")
    cutoff_date: AwareDatetime = Field(..., description="截单时间，不晚于取餐时间")
    capacity: int = Field(..., gt=0, description="容量")


class BatchStatusRequest(BaseModel):
    status: BatchStatus


class BatchActiveRequest(BaseModel):
    is_active: bool
