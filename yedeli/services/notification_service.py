"""
通知服务
每次下单和订单状态变更在事务提交后广播给订阅者。
订阅者失败只记录日志，不会阻塞或回滚状态变更。
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..core.database import DatabaseManager
from ..core.exceptions import BaseApplicationError
from ..core.security import Identity
from ..models.order import Order, OrderStatus
from ..utils.time import utcnow, to_db

logger = logging.getLogger(__name__)


@dataclass
class OrderNotification:
    """订单事件"""
    action: str                       # order_placed / order_transition
    order: Order
    actor: Identity
    from_status: Optional[OrderStatus] = None
    occurred_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "order_id": self.order.id,
            "batch_id": self.order.batch_id,
            "buyer_id": self.order.buyer_id,
            "quantity": self.order.quantity,
            "total_price": str(self.order.total_price),
            "from_status": self.from_status.value if self.from_status else None,
            "to_status": self.order.status.value,
            "actor_id": self.actor.user_id,
            "actor_role": self.actor.role.value,
            "occurred_at": self.occurred_at.isoformat(),
        }


Subscriber = Callable[[OrderNotification], None]


class NotificationService:
    """通知分发器"""

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self._subscribers: List[Subscriber] = list(subscribers or [])

    def subscribe(self, subscriber: Subscriber):
        self._subscribers.append(subscriber)

    def publish(self, notification: OrderNotification):
        """逐个通知订阅者，单个失败不影响其他订阅者"""
        for subscriber in list(self._subscribers):
            try:
                subscriber(notification)
            except Exception:
                logger.exception(
                    "notification subscriber %r failed for order %s",
                    subscriber, notification.order.id,
                )


class AuditLogSubscriber:
    """把订单事件写入 logs 表"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    def __call__(self, notification: OrderNotification):
        try:
            self.db.execute(
                "INSERT INTO logs(user_id, actor_id, action, detail_json, created_at) VALUES (?,?,?,?,?)",
                [
                    notification.order.buyer_id,
                    notification.actor.user_id,
                    notification.action,
                    json.dumps(notification.to_dict()),
                    to_db(notification.occurred_at),
                ],
            )
        except BaseApplicationError as e:
            logger.warning("audit log write failed for order %s: %s",
                           notification.order.id, e.message)


def logging_subscriber(notification: OrderNotification):
    logger.info(
        "%s order=%s %s -> %s by %s:%s",
        notification.action,
        notification.order.id,
        notification.from_status.value if notification.from_status else "-",
        notification.order.status.value,
        notification.actor.role.value,
        notification.actor.user_id,
    )
