"""
Yedeli 家庭厨房限量订餐服务 - 主应用入口

主要功能模块：
- 菜品与批次（限量出餐）管理
- 下单：容量控制、截单时间、幂等重试
- 订单状态流转与容量归还
- 支付回调与评价

技术栈：FastAPI + DuckDB + JWT认证
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from .api import api_router
from .config.settings import Settings, settings as default_settings
from .core.database import DatabaseManager
from .core.error_handler import (
    application_error_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from .core.exceptions import BaseApplicationError, DatabaseError
from .core.log_config import setup_logging
from .services import build_services
from .services.catalog_service import CatalogService

logger = logging.getLogger(__name__)


async def sweep_batches_periodically(catalog: CatalogService, interval: float):
    """
    后台定时推进批次状态：过了截单时间的排期批次进入制作中

    单次扫描失败只记录日志，下一轮继续。
    """
    logger.info("batch sweeper started, interval=%ss", interval)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await asyncio.to_thread(catalog.sweep_batches)
            except BaseApplicationError as e:
                logger.error("batch sweep failed: %s", e.message)
    except asyncio.CancelledError:
        logger.info("batch sweeper stopped")
        raise


def create_app(db: Optional[DatabaseManager] = None, settings: Optional[Settings] = None) -> FastAPI:
    """
    创建FastAPI应用

    Args:
        db: 数据库管理器，测试时传入内存库
        settings: 配置，默认使用全局配置
    """
    settings = settings or default_settings
    owns_db = db is None
    db = db or DatabaseManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """应用生命周期管理"""
        setup_logging(settings.log_level)
        db.init_database()

        sweeper = None
        if settings.batch_sweep_interval_seconds > 0:
            sweeper = asyncio.create_task(sweep_batches_periodically(
                app.state.services.catalog, settings.batch_sweep_interval_seconds))
        yield

        if sweeper is not None:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
        if owns_db:
            db.close()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="家庭厨房限量订餐API",
        debug=settings.debug,
        lifespan=lifespan,
    )
    app.state.db = db
    app.state.services = build_services(db, settings)

    # 添加中间件
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # 注册异常处理器
    app.add_exception_handler(BaseApplicationError, application_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # 注册路由
    app.include_router(api_router, prefix=settings.api_prefix)

    # 健康检查
    @app.get("/health")
    async def health_check():
        try:
            db.execute_one("SELECT 1 AS ok")
        except DatabaseError as e:
            logger.warning("health check failed: %s", e.message)
            return {
                "status": "unhealthy",
                "version": settings.api_version,
                "database": f"error: {e.message}",
            }
        return {
            "status": "healthy",
            "version": settings.api_version,
            "database": "connected",
        }

    @app.get("/")
    async def root():
        return {
            "name": settings.api_title,
            "version": settings.api_version,
            "description": "家庭厨房限量订餐API",
        }

    return app


# 应用实例
app = create_app()
