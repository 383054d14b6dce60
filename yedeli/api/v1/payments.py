"""
支付回调路由
只接受系统令牌
"""

from fastapi import APIRouter, Depends

from ..deps import get_services
from ...core.error_handler import create_success_response
from ...core.security import Identity, get_system_identity
from ...models.order import Order
from ...schemas.common import ApiResponse
from ...schemas.payment import PaymentCallbackRequest
from ...services import Services

router = APIRouter()


@router.post("/callback", response_model=ApiResponse[Order])
def payment_callback(
    req: PaymentCallbackRequest,
    identity: Identity = Depends(get_system_identity),
    services: Services = Depends(get_services),
):
    order = services.payments.handle_payment_result(
        req.order_id, req.outcome,
        amount=req.amount,
        currency=req.currency,
        payment_method=req.payment_method,
        gateway_reference=req.gateway_reference,
    )
    return create_success_response(order)
