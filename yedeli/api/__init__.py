"""
API routes and endpoints.
"""

from fastapi import APIRouter
from .v1 import batches, cooks, dishes, orders, payments

api_router = APIRouter()

# 包含所有v1路由
api_router.include_router(dishes.router, prefix="/dishes", tags=["菜品"])
api_router.include_router(batches.router, prefix="/batches", tags=["批次"])
api_router.include_router(orders.router, prefix="/orders", tags=["订单"])
api_router.include_router(cooks.router, prefix="/cooks", tags=["厨师"])
api_router.include_router(payments.router, prefix="/payments", tags=["支付"])
