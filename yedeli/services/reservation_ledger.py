"""
预订账本
订单与状态事件只追加不删除；幂等键映射到首次创建的订单，
保证同一买家同一幂等键最多只生成一个订单。

另外提供批次占用数的对账修复：按订单表重新计算占用数量，
与 batches.current_orders 不一致时用条件更新修正。
"""

import logging
from typing import Any, Dict, List, Optional

import duckdb

from ..core.database import DatabaseManager, fetch_dict, fetch_dicts
from ..core.exceptions import (
    BatchNotFoundError,
    DuplicateIdempotencyKeyError,
    OrderNotFoundError,
    PersistenceConflictError,
)
from ..core.security import Identity
from ..models.order import Order, OrderEvent, OrderStatus, RESERVING_STATUSES
from ..utils.time import utcnow, to_db

logger = logging.getLogger(__name__)

ORDER_COLUMNS = (
    "id, buyer_id, batch_id, dish_id, quantity, unit_price, total_price, status, "
    "pickup_code, special_instructions, created_at, updated_at, confirmed_at, completed_at, cancelled_at"
)


def order_from_row(row: Dict[str, Any]) -> Order:
    return Order(**row)


class ReservationLedger:
    """预订账本"""

    def __init__(self, db: DatabaseManager):
        self.db = db

    # ---- 订单读取 ----

    def get_order(self, order_id: str, conn: Optional[duckdb.DuckDBPyConnection] = None) -> Order:
        query = f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = ?"
        row = fetch_dict(conn, query, [order_id]) if conn is not None else self.db.execute_one(query, [order_id])
        if not row:
            raise OrderNotFoundError("订单不存在", details={"order_id": order_id})
        return order_from_row(row)

    def find_by_key(self, buyer_id: str, idempotency_key: str,
                    conn: Optional[duckdb.DuckDBPyConnection] = None) -> Optional[Order]:
        """按幂等键查找已创建的订单"""
        query = "SELECT order_id FROM idempotency_keys WHERE buyer_id = ? AND idem_key = ?"
        params = [buyer_id, idempotency_key]
        row = fetch_dict(conn, query, params) if conn is not None else self.db.execute_one(query, params)
        if not row:
            return None
        return self.get_order(row["order_id"], conn)

    def orders_for_buyer(self, buyer_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        conditions = ["buyer_id = ?"]
        params: List[Any] = [buyer_id]
        if status:
            conditions.append("status = ?")
            params.append(status.value)
        rows = self.db.execute_query(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE {' AND '.join(conditions)} ORDER BY created_at DESC",
            params,
        )
        return [order_from_row(r) for r in rows]

    def orders_for_batch(self, batch_id: str) -> List[Order]:
        rows = self.db.execute_query(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE batch_id = ? ORDER BY created_at",
            [batch_id],
        )
        return [order_from_row(r) for r in rows]

    # ---- 写入（调用方负责事务） ----

    def record_if_absent(self, conn: duckdb.DuckDBPyConnection, idempotency_key: Optional[str],
                         order: Order) -> Order:
        """
        写入新订单；若幂等键已被使用则抛出 DuplicateIdempotencyKeyError

        必须在下单事务内调用。抛出异常时调用方应回滚整个事务
        （包括批次占用数的增加），然后返回已存在的订单。

        Raises:
            DuplicateIdempotencyKeyError: 幂等键已映射到其他订单
        """
        if idempotency_key:
            existing = fetch_dict(
                conn,
                "SELECT order_id FROM idempotency_keys WHERE buyer_id = ? AND idem_key = ?",
                [order.buyer_id, idempotency_key],
            )
            if existing:
                raise DuplicateIdempotencyKeyError(existing["order_id"])

        conn.execute(
            f"INSERT INTO orders({ORDER_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
            [
                order.id, order.buyer_id, order.batch_id, order.dish_id, order.quantity,
                order.unit_price, order.total_price, order.status.value, order.pickup_code,
                order.special_instructions,
                to_db(order.created_at), to_db(order.updated_at),
                None, None, None,
            ],
        )

        if idempotency_key:
            inserted = conn.execute(
                """INSERT INTO idempotency_keys(buyer_id, idem_key, order_id, created_at)
                   VALUES (?,?,?,?) ON CONFLICT DO NOTHING RETURNING order_id""",
                [order.buyer_id, idempotency_key, order.id, to_db(order.created_at)],
            ).fetchone()
            if inserted is None:
                # 其他进程已提交同一幂等键
                row = fetch_dict(
                    conn,
                    "SELECT order_id FROM idempotency_keys WHERE buyer_id = ? AND idem_key = ?",
                    [order.buyer_id, idempotency_key],
                )
                if row is None:
                    raise PersistenceConflictError("幂等键写入冲突")
                raise DuplicateIdempotencyKeyError(row["order_id"])

        return order

    def append_event(self, conn: duckdb.DuckDBPyConnection, order_id: str,
                     from_status: Optional[OrderStatus], to_status: OrderStatus,
                     actor: Identity):
        conn.execute(
            """INSERT INTO order_events(order_id, from_status, to_status, actor_id, actor_role, created_at)
               VALUES (?,?,?,?,?,?)""",
            [
                order_id,
                from_status.value if from_status else None,
                to_status.value,
                actor.user_id,
                actor.role.value,
                to_db(utcnow()),
            ],
        )

    def events_for(self, order_id: str) -> List[OrderEvent]:
        rows = self.db.execute_query(
            """SELECT order_id, from_status, to_status, actor_id, actor_role, created_at
               FROM order_events WHERE order_id = ? ORDER BY event_id""",
            [order_id],
        )
        return [OrderEvent(**r) for r in rows]

    # ---- 对账 ----

    def reconcile(self, batch_id: str) -> Dict[str, Any]:
        """
        按订单表重新计算批次占用数并修复偏差

        Returns:
            dict: batch_id、recorded（修复前）、expected、repaired
        """
        reserving = [s.value for s in RESERVING_STATUSES]
        placeholders = ",".join(["?"] * len(reserving))

        with self.db.transaction() as conn:
            batch = fetch_dict(
                conn, "SELECT id, capacity, current_orders, version FROM batches WHERE id = ?", [batch_id])
            if not batch:
                raise BatchNotFoundError("批次不存在", details={"batch_id": batch_id})

            expected = fetch_dict(
                conn,
                f"""SELECT COALESCE(SUM(quantity), 0) AS reserved FROM orders
                    WHERE batch_id = ? AND status IN ({placeholders})""",
                [batch_id, *reserving],
            )["reserved"]
            expected = int(expected)
            recorded = batch["current_orders"]

            repaired = False
            if expected != recorded:
                target = min(max(expected, 0), batch["capacity"])
                updated = conn.execute(
                    """UPDATE batches
                       SET current_orders = ?, version = version + 1, updated_at = ?
                       WHERE id = ? AND version = ?
                       RETURNING current_orders""",
                    [target, to_db(utcnow()), batch_id, batch["version"]],
                ).fetchone()
                if updated is None:
                    raise PersistenceConflictError("对账期间批次被修改")
                repaired = True
                logger.warning(
                    "batch %s counter drift repaired: recorded=%s expected=%s",
                    batch_id, recorded, expected,
                )

        return {
            "batch_id": batch_id,
            "recorded": recorded,
            "expected": expected,
            "repaired": repaired,
        }
