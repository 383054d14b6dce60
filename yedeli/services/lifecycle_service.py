"""
订单状态流转服务

状态机：
    pending   -> confirmed / cancelled / refunded
    confirmed -> preparing / cancelled / refunded
    preparing -> ready / cancelled / refunded
    ready     -> completed / cancelled / refunded
    completed、cancelled、refunded 为终态

操作权限：
- 买家只能取消自己的订单
- 厨师只能操作自己批次的订单
- 管理员和系统（支付回调）可以执行任何合法流转
- 待确认订单过了批次截单时间，买家和厨师都不能再取消；
  已确认及之后的订单在完成前随时可以取消或退款

订单状态用比较-交换更新，取消/退款在同一事务内归还批次容量，
重复取消会因状态已是终态而失败，不会重复归还。
"""

import logging
import secrets
from typing import Callable, Optional

from ..config.settings import Settings, settings as default_settings
from ..core.database import DatabaseManager
from ..core.exceptions import (
    CutoffPassedError,
    DatabaseError,
    InvalidTransitionError,
    PermissionDeniedError,
    PersistenceConflictError,
    RetryableError,
)
from ..core.locks import KeyedLocks
from ..core.retry import RetryPolicy
from ..core.security import Identity, Role
from ..models.order import ORDER_TRANSITIONS, Order, OrderStatus
from .catalog_service import CatalogService
from .notification_service import NotificationService, OrderNotification
from .reservation_ledger import ReservationLedger
from ..utils.time import utcnow, to_db

logger = logging.getLogger(__name__)

# 去掉容易混淆的 0/O、1/I
PICKUP_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PICKUP_CODE_ATTEMPTS = 10

_TIMESTAMP_COLUMNS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.COMPLETED: "completed_at",
    OrderStatus.CANCELLED: "cancelled_at",
    OrderStatus.REFUNDED: "cancelled_at",
}


class OrderLifecycleService:
    """订单状态流转"""

    def __init__(
        self,
        db: DatabaseManager,
        catalog: CatalogService,
        ledger: ReservationLedger,
        notifier: NotificationService,
        batch_locks: Optional[KeyedLocks] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable = utcnow,
        settings: Settings = default_settings,
    ):
        self.db = db
        self.catalog = catalog
        self.ledger = ledger
        self.notifier = notifier
        self.batch_locks = batch_locks or catalog.batch_locks
        self.retry_policy = retry_policy or RetryPolicy(
            settings.admission_max_attempts, settings.admission_backoff_ms)
        self.clock = clock
        self.timeout = settings.persistence_timeout_seconds
        self.pickup_code_length = settings.pickup_code_length

    def transition(self, order_id: str, target: OrderStatus, actor: Identity) -> Order:
        """
        变更订单状态

        Args:
            order_id: 订单ID
            target: 目标状态
            actor: 操作者身份

        Returns:
            Order: 变更后的订单

        Raises:
            OrderNotFoundError: 订单不存在
            PermissionDeniedError: 操作者无权执行该流转
            InvalidTransitionError: 非法流转，订单保持不变
            CutoffPassedError: 截单后取消待确认订单
            PersistenceConflictError: 并发冲突重试耗尽
        """
        target = OrderStatus(target)
        # 先按订单找到批次，再在批次锁内重新读取
        batch_id = self.ledger.get_order(order_id).batch_id

        try:
            order, previous = self.retry_policy.run(
                lambda: self._attempt(order_id, batch_id, target, actor),
                label=f"transition order={order_id}",
            )
        except PersistenceConflictError:
            raise
        except RetryableError as e:
            raise PersistenceConflictError(
                "订单状态更新失败，请稍后重试",
                details={"order_id": order_id, "cause": e.error_code},
            )

        logger.info("order %s %s -> %s by %s:%s",
                    order_id, previous.value, order.status.value, actor.role.value, actor.user_id)
        self.notifier.publish(OrderNotification(
            action="order_transition", order=order, actor=actor, from_status=previous))
        return order

    def _attempt(self, order_id: str, batch_id: str, target: OrderStatus, actor: Identity):
        with self.batch_locks.hold(batch_id):
            order = self.ledger.get_order(order_id)
            batch = self.catalog.get_batch(batch_id)
            now = self.clock()

            self._authorize(order, batch.cook_id, actor)
            if target not in ORDER_TRANSITIONS[order.status]:
                raise InvalidTransitionError(order.status.value, target.value)
            if actor.role == Role.BUYER and target != OrderStatus.CANCELLED:
                raise PermissionDeniedError("买家只能取消订单")
            if (order.status == OrderStatus.PENDING and target == OrderStatus.CANCELLED
                    and not actor.is_privileged and batch.cutoff_passed(now)):
                raise CutoffPassedError(
                    "已过截单时间，不能取消", details={"cutoff_date": batch.cutoff_date.isoformat()})

            with self.db.transaction(timeout=self.timeout) as conn:
                assignments = ["status = ?", "updated_at = ?"]
                params = [target.value, to_db(now)]
                column = _TIMESTAMP_COLUMNS.get(target)
                if column:
                    assignments.append(f"{column} = ?")
                    params.append(to_db(now))
                if target == OrderStatus.CONFIRMED:
                    assignments.append("pickup_code = ?")
                    params.append(self._issue_pickup_code(conn, order_id, now))

                updated = conn.execute(
                    f"UPDATE orders SET {', '.join(assignments)} WHERE id = ? AND status = ? RETURNING id",
                    [*params, order_id, order.status.value],
                ).fetchone()
                if updated is None:
                    raise PersistenceConflictError(
                        "订单已被并发修改", details={"order_id": order_id})

                if target.releases_capacity:
                    conn.execute(
                        """UPDATE batches
                           SET current_orders = GREATEST(current_orders - ?, 0),
                               version = version + 1, updated_at = ?
                           WHERE id = ?""",
                        [order.quantity, to_db(now), batch_id],
                    )
                elif target == OrderStatus.COMPLETED:
                    self._count_completed(conn, batch.cook_id, now)

                self.ledger.append_event(conn, order_id, order.status, target, actor)
                result = self.ledger.get_order(order_id, conn)

        return result, order.status

    def _authorize(self, order: Order, cook_id: str, actor: Identity):
        if actor.is_privileged:
            return
        if actor.role == Role.BUYER and actor.user_id == order.buyer_id:
            return
        if actor.role == Role.COOK and actor.user_id == cook_id:
            return
        raise PermissionDeniedError("无权操作该订单", details={"order_id": order.id})

    def _issue_pickup_code(self, conn, order_id: str, now) -> str:
        for _ in range(PICKUP_CODE_ATTEMPTS):
            code = "".join(secrets.choice(PICKUP_CODE_ALPHABET) for _ in range(self.pickup_code_length))
            inserted = conn.execute(
                """INSERT INTO pickup_codes(code, order_id, created_at) VALUES (?,?,?)
                   ON CONFLICT DO NOTHING RETURNING code""",
                [code, order_id, to_db(now)],
            ).fetchone()
            if inserted:
                return code
        raise DatabaseError("无法生成唯一取餐码", details={"order_id": order_id})

    @staticmethod
    def _count_completed(conn, cook_id: str, now):
        updated = conn.execute(
            """UPDATE cook_stats SET total_orders = total_orders + 1, updated_at = ?
               WHERE cook_id = ? RETURNING cook_id""",
            [to_db(now), cook_id],
        ).fetchone()
        if updated is None:
            conn.execute(
                "INSERT INTO cook_stats(cook_id, total_orders, updated_at) VALUES (?, 1, ?)",
                [cook_id, to_db(now)],
            )
