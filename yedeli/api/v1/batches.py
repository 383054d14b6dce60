"""
批次管理路由模块
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from ..deps import get_services
from ...core.error_handler import create_success_response
from ...core.security import Identity, Role, get_identity
from ...models.catalog import Batch
from ...models.order import Order
from ...schemas.catalog import BatchActiveRequest, BatchCreateRequest, BatchStatusRequest
from ...schemas.common import ApiResponse
from ...services import Services

router = APIRouter()


@router.post("", response_model=ApiResponse[Batch], status_code=201)
def create_batch(
    req: BatchCreateRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """厨师为自己的菜品排一个批次"""
    batch = services.catalog.create_batch(
        identity, req.dish_id, req.scheduled_date, req.pickup_date, req.cutoff_date, req.capacity)
    return create_success_response(batch, "批次已创建")


@router.get("", response_model=ApiResponse[List[Batch]])
def list_open_batches(
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """
    当前可下单的批次

    返回的剩余容量仅供展示，下单时服务端会重新校验。
    """
    return create_success_response(services.catalog.list_open_batches())


@router.post("/sweep", response_model=ApiResponse[Dict[str, Any]])
def sweep_batches(
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """立即推进已过截单时间的批次（管理员或系统调度）"""
    identity.require(Role.ADMIN, Role.SYSTEM)
    moved = services.catalog.sweep_batches()
    return create_success_response({"moved": moved})


@router.get("/{batch_id}", response_model=ApiResponse[Batch])
def get_batch(
    batch_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    return create_success_response(services.catalog.get_batch(batch_id))


@router.post("/{batch_id}/status", response_model=ApiResponse[Batch])
def update_batch_status(
    batch_id: str,
    req: BatchStatusRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    batch = services.catalog.update_batch_status(identity, batch_id, req.status)
    return create_success_response(batch)


@router.post("/{batch_id}/active", response_model=ApiResponse[Batch])
def set_batch_active(
    batch_id: str,
    req: BatchActiveRequest,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """启用/停用批次，已下的订单不受影响"""
    batch = services.catalog.set_batch_active(identity, batch_id, req.is_active)
    return create_success_response(batch)


@router.post("/{batch_id}/reconcile", response_model=ApiResponse[Dict[str, Any]])
def reconcile_batch(
    batch_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    """按订单重新计算批次占用数（管理员）"""
    identity.require(Role.ADMIN)
    report = services.ledger.reconcile(batch_id)
    return create_success_response(report, "对账完成")


@router.get("/{batch_id}/orders", response_model=ApiResponse[List[Order]])
def list_batch_orders(
    batch_id: str,
    identity: Identity = Depends(get_identity),
    services: Services = Depends(get_services),
):
    return create_success_response(services.orders.list_orders_for_batch(identity, batch_id))
