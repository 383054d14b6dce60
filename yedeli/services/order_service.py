"""
订单服务模块（下单引擎）
负责校验并原子地把新订单写入批次，是容量控制的核心

下单流程：
1. 有幂等键时先查账本，命中直接返回原订单
2. 在批次锁内读取批次快照，执行可订性判断
3. 在同一事务内条件更新批次占用数（版本号 + 容量条件），
   更新成功后读取菜品当前价格作为快照，写入待确认订单
4. 条件更新未命中（并发修改）或持久化超时视为可重试，
   有限次重试后仍失败则返回 CapacityExceeded

业务规则：
- 数量必须为正整数
- 单价在下单时快照，之后改价不影响已下订单
- 批次占用数在每个成功订单上只增加一次
"""

import logging
import uuid
from typing import Callable, List, Optional, Tuple

from ..config.settings import Settings, settings as default_settings
from ..core.database import DatabaseManager, fetch_dict
from ..core.exceptions import (
    BatchUnavailableError,
    CapacityExceededError,
    DuplicateIdempotencyKeyError,
    PermissionDeniedError,
    PersistenceConflictError,
    RetryableError,
    ValidationError,
)
from ..core.locks import KeyedLocks
from ..core.retry import RetryPolicy
from ..core.security import Identity, Role
from ..models.base import quantize_money
from ..models.order import Order, OrderStatus
from .availability import can_reserve
from .catalog_service import CatalogService
from .notification_service import NotificationService, OrderNotification
from .reservation_ledger import ReservationLedger
from ..utils.time import utcnow, to_db

logger = logging.getLogger(__name__)

SPECIAL_INSTRUCTIONS_MAX = 500


class OrderService:
    """订单服务类，封装下单和订单查询"""

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
        self.key_locks = KeyedLocks()
        self.retry_policy = retry_policy or RetryPolicy(
            settings.admission_max_attempts, settings.admission_backoff_ms)
        self.clock = clock
        self.timeout = settings.persistence_timeout_seconds

    def place_order(self, identity: Identity, batch_id: str, quantity: int,
                    idempotency_key: Optional[str] = None,
                    special_instructions: Optional[str] = None) -> Order:
        """
        创建新订单

        Args:
            identity: 请求身份（买家或管理员）
            batch_id: 批次ID
            quantity: 数量，正整数
            idempotency_key: 调用方提供的幂等键，重试时传入同一个值
            special_instructions: 买家备注，随订单保存

        Returns:
            Order: 新建的待确认订单；幂等键重复时返回原订单

        Raises:
            InvalidQuantityError: 数量不是正整数
            BatchNotFoundError: 批次不存在
            BatchUnavailableError: 批次或菜品已停用、批次已取消或完成
            CutoffPassedError: 已过截单时间
            CapacityExceededError: 容量不足，或重试耗尽
        """
        identity.require(Role.BUYER, Role.ADMIN)
        if special_instructions and len(special_instructions) > SPECIAL_INSTRUCTIONS_MAX:
            raise ValidationError(
                "备注过长", details={"max_length": SPECIAL_INSTRUCTIONS_MAX})

        if idempotency_key:
            existing = self.ledger.find_by_key(identity.user_id, idempotency_key)
            if existing is not None:
                logger.info("idempotent replay key=%s -> order %s", idempotency_key, existing.id)
                return existing
            with self.key_locks.hold((identity.user_id, idempotency_key)):
                return self._admit(identity, batch_id, quantity, idempotency_key, special_instructions)

        return self._admit(identity, batch_id, quantity, None, special_instructions)

    def _admit(self, identity: Identity, batch_id: str, quantity: int,
               idempotency_key: Optional[str], special_instructions: Optional[str]) -> Order:
        try:
            order, created = self.retry_policy.run(
                lambda: self._attempt(identity, batch_id, quantity, idempotency_key, special_instructions),
                label=f"admission batch={batch_id}",
            )
        except RetryableError as e:
            raise CapacityExceededError(
                "批次容量暂时无法确认，请稍后重试",
                details={"batch_id": batch_id, "cause": e.error_code},
            )

        if created:
            logger.info("order %s admitted on batch %s qty=%d", order.id, batch_id, quantity)
            self.notifier.publish(OrderNotification(
                action="order_placed", order=order, actor=identity))
        return order

    def _attempt(self, identity: Identity, batch_id: str, quantity: int,
                 idempotency_key: Optional[str],
                 special_instructions: Optional[str]) -> Tuple[Order, bool]:
        """单次检查-提交，返回 (订单, 是否新建)"""
        with self.batch_locks.hold(batch_id):
            if idempotency_key:
                existing = self.ledger.find_by_key(identity.user_id, idempotency_key)
                if existing is not None:
                    return existing, False

            batch = self.catalog.get_batch(batch_id)
            now = self.clock()
            can_reserve(batch, quantity, now).raise_for_reason()

            try:
                with self.db.transaction(timeout=self.timeout) as conn:
                    reserved = conn.execute(
                        """UPDATE batches
                           SET current_orders = current_orders + ?, version = version + 1, updated_at = ?
                           WHERE id = ? AND version = ?
                             AND current_orders + ? <= capacity
                             AND is_active AND status NOT IN ('cancelled', 'completed')
                             AND cutoff_date > ?
                           RETURNING current_orders""",
                        [quantity, to_db(now), batch_id, batch.version, quantity, to_db(now)],
                    ).fetchone()
                    if reserved is None:
                        raise PersistenceConflictError(
                            "批次已被并发修改", details={"batch_id": batch_id, "version": batch.version})

                    dish = fetch_dict(conn, "SELECT price, is_active FROM dishes WHERE id = ?", [batch.dish_id])
                    if dish is None or not dish["is_active"]:
                        raise BatchUnavailableError("菜品已下架", details={"dish_id": batch.dish_id})

                    unit_price = quantize_money(dish["price"])
                    order = Order(
                        id=str(uuid.uuid4()),
                        buyer_id=identity.user_id,
                        batch_id=batch.id,
                        dish_id=batch.dish_id,
                        quantity=quantity,
                        unit_price=unit_price,
                        total_price=quantize_money(unit_price * quantity),
                        status=OrderStatus.PENDING,
                        special_instructions=special_instructions,
                        created_at=now,
                        updated_at=now,
                    )
                    self.ledger.record_if_absent(conn, idempotency_key, order)
                    self.ledger.append_event(conn, order.id, None, OrderStatus.PENDING, identity)
            except DuplicateIdempotencyKeyError as dup:
                # 事务已回滚，占用数未变
                return self.ledger.get_order(dup.order_id), False

        return order, True

    # ---- 查询 ----

    def get_order(self, identity: Identity, order_id: str) -> Order:
        order = self.ledger.get_order(order_id)
        self._require_visible(identity, order)
        return order

    def list_orders_for_buyer(self, identity: Identity,
                              status: Optional[OrderStatus] = None) -> List[Order]:
        return self.ledger.orders_for_buyer(identity.user_id, status)

    def list_orders_for_batch(self, identity: Identity, batch_id: str) -> List[Order]:
        batch = self.catalog.get_batch(batch_id)
        if not identity.is_privileged and not (
                identity.role == Role.COOK and identity.user_id == batch.cook_id):
            raise PermissionDeniedError("只能查看自己批次的订单")
        return self.ledger.orders_for_batch(batch_id)

    def _require_visible(self, identity: Identity, order: Order):
        if identity.is_privileged:
            return
        if identity.role == Role.BUYER and identity.user_id == order.buyer_id:
            return
        if identity.role == Role.COOK:
            batch = self.catalog.get_batch(order.batch_id)
            if batch.cook_id == identity.user_id:
                return
        raise PermissionDeniedError("无权查看该订单")
