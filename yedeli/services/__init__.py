"""
Business logic services.
Contains service layer implementations for core business operations.

所有服务共享同一个 DatabaseManager 和同一张批次锁表，
保证下单和状态流转对同一批次串行执行。
"""

from dataclasses import dataclass
from typing import Optional

from ..config.settings import Settings, settings as default_settings
from ..core.database import DatabaseManager
from ..core.locks import KeyedLocks
from .catalog_service import CatalogService
from .lifecycle_service import OrderLifecycleService
from .notification_service import AuditLogSubscriber, NotificationService, logging_subscriber
from .order_service import OrderService
from .payment_service import PaymentService
from .reservation_ledger import ReservationLedger
from .review_service import ReviewService


@dataclass
class Services:
    """服务容器"""
    db: DatabaseManager
    catalog: CatalogService
    ledger: ReservationLedger
    notifier: NotificationService
    orders: OrderService
    lifecycle: OrderLifecycleService
    payments: PaymentService
    reviews: ReviewService


def build_services(db: DatabaseManager, settings: Optional[Settings] = None,
                   notifier: Optional[NotificationService] = None) -> Services:
    """按依赖顺序组装服务"""
    settings = settings or default_settings
    batch_locks = KeyedLocks()
    if notifier is None:
        notifier = NotificationService([AuditLogSubscriber(db), logging_subscriber])

    catalog = CatalogService(db, batch_locks)
    ledger = ReservationLedger(db)
    orders = OrderService(db, catalog, ledger, notifier, batch_locks=batch_locks, settings=settings)
    lifecycle = OrderLifecycleService(db, catalog, ledger, notifier, batch_locks=batch_locks, settings=settings)
    return Services(
        db=db,
        catalog=catalog,
        ledger=ledger,
        notifier=notifier,
        orders=orders,
        lifecycle=lifecycle,
        payments=PaymentService(db, lifecycle, settings),
        reviews=ReviewService(db, catalog, ledger),
    )


__all__ = [
    "Services",
    "build_services",
    "CatalogService",
    "OrderService",
    "OrderLifecycleService",
    "PaymentService",
    "ReservationLedger",
    "ReviewService",
    "NotificationService",
]
