"""
订单管理路由模块

下单接口支持 Idempotency-Key 请求头：网络重试时携带同一个值，
不会重复占用批次容量，直接返回第一次创建的订单。
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Header

from ..deps import get_services
from ...core.error_handler import create_success_response
from ...core.security import Identity, get_identity
from ...models.order import Order, OrderEvent, OrderStatus
from ...models.payment import Payment
from ...models.review import Review
from ...schemas.common import ApiResponse
from ...schemas.order import OrderCreateRequest, OrderTransitionRequest, ReviewCreateRequest
from ...services import Services

router = APIRouter()


@router.post("", response_model=ApiResponse[Order], status_code=201)
def create_order(
    req: OrderCreateRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    """创建订单"""
    order = services.orders.place_order(
        identity, req.batch_id, req.quantity, idempotency_key, req.special_instructions)
    return create_success_response(order, "下单成功")


@router.get("", response_model=ApiResponse[List[Order]])
def list_my_orders(
    status: Optional[OrderStatus] = None,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """当前买家的订单"""
    return create_success_response(services.orders.list_orders_for_buyer(identity, status))


@router.get("/{order_id}", response_model=ApiResponse[Order])
def get_order(
    order_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    return create_success_response(services.orders.get_order(identity, order_id))


@router.post("/{order_id}/transition", response_model=ApiResponse[Order])
def transition_order(
    order_id: str,
    req: OrderTransitionRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """变更订单状态（厨师推进制作进度，管理员处理异常）"""
    order = services.lifecycle.transition(order_id, req.status, identity)
    return create_success_response(order)


@router.post("/{order_id}/cancel", response_model=ApiResponse[Order])
def cancel_order(
    order_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """取消订单并归还批次容量"""
    order = services.lifecycle.transition(order_id, OrderStatus.CANCELLED, identity)
    return create_success_response(order, "订单已取消")


@router.get("/{order_id}/events", response_model=ApiResponse[List[OrderEvent]])
def list_order_events(
    order_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    services.orders.get_order(identity, order_id)
    return create_success_response(services.ledger.events_for(order_id))


@router.get("/{order_id}/payments", response_model=ApiResponse[List[Payment]])
def list_order_payments(
    order_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """订单的支付回调记录"""
    services.orders.get_order(identity, order_id)
    return create_success_response(services.payments.payments_for_order(order_id))


@router.post("/{order_id}/review", response_model=ApiResponse[Review], status_code=201)
def review_order(
    order_id: str,
    req: ReviewCreateRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    review = services.reviews.submit_review(identity, order_id, req.rating, req.comment)
    return create_success_response(review, "评价成功")
