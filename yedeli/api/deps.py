"""
路由依赖
服务容器在应用启动时创建并挂在 app.state 上
"""

from fastapi import Request

from ..services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
