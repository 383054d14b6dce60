"""
厨师主页路由模块
菜品列表、评价和汇总评分
"""

from typing import List

from fastapi import APIRouter, Depends

from ..deps import get_services
from ...core.error_handler import create_success_response
from ...core.security import Identity, Role, get_identity
from ...models.catalog import CookStats, Dish
from ...models.review import Review
from ...schemas.common import ApiResponse
from ...services import Services

router = APIRouter()


@router.get("/{cook_id}/dishes", response_model=ApiResponse[List[Dish]])
def list_cook_dishes(
    cook_id: str,
    include_inactive: bool = False,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """厨师的菜品，停用的菜品只有本人和管理员能看到"""
    is_owner = identity.role == Role.COOK and identity.user_id == cook_id
    show_inactive = include_inactive and (is_owner or identity.is_privileged)
    return create_success_response(services.catalog.list_dishes(cook_id, show_inactive))


@router.get("/{cook_id}/reviews", response_model=ApiResponse[List[Review]])
def list_cook_reviews(
    cook_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    return create_success_response(services.reviews.reviews_for_cook(cook_id))


@router.get("/{cook_id}/stats", response_model=ApiResponse[CookStats])
def get_cook_stats(
    cook_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """完成订单数和平均评分"""
    return create_success_response(services.reviews.cook_rating(cook_id))
