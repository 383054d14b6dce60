"""
菜品管理路由模块
"""

from fastapi import APIRouter, Depends

from ..deps import get_services
from ...core.error_handler import create_success_response
from ...core.security import Identity, get_identity
from ...models.catalog import Dish
from ...schemas.catalog import DishCreateRequest, DishUpdateRequest
from ...schemas.common import ApiResponse
from ...services import Services

router = APIRouter()


@router.post("", response_model=ApiResponse[Dish], status_code=201)
def create_dish(
    req: DishCreateRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """厨师创建菜品"""
    dish = services.catalog.create_dish(
        identity, req.name, req.price, req.cuisine, req.description,
        image_url=req.image_url,
        dietary_tags=req.dietary_tags,
        ingredients=req.ingredients,
        allergens=req.allergens,
        preparation_time=req.preparation_time,
    )
    return create_success_response(dish, "菜品已创建")


@router.patch("/{dish_id}", response_model=ApiResponse[Dish])
def update_dish(
    dish_id: str,
    req: DishUpdateRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """修改菜品，改价只影响之后的订单"""
    dish = services.catalog.update_dish(identity, dish_id, **req.model_dump(exclude_unset=True))
    return create_success_response(dish)


@router.get("/{dish_id}", response_model=ApiResponse[Dish])
def get_dish(
    dish_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    return create_success_response(services.catalog.get_dish(dish_id))
