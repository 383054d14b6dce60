"""
数据库连接和管理模块
提供 DuckDB 连接、表结构定义以及带超时的事务上下文

并发模型：
- 根连接只负责建库建表，每个线程通过 cursor() 获得独立的游标连接
- 事务中的 DuckDB 写冲突映射为 PersistenceConflictError
- 超过 timeout 的事务被中断或拒绝提交，映射为 PersistenceTimeoutError
"""

import logging
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import duckdb

from .exceptions import (
    BaseApplicationError,
    DatabaseError,
    PersistenceConflictError,
    PersistenceTimeoutError,
)
from ..config.settings import settings

logger = logging.getLogger(__name__)

# 完整的表结构定义
# 时间字段统一存储 naive UTC
SCHEMA_SQL = r"""
CREATE TABLE IF NOT EXISTS dishes (
  id TEXT PRIMARY KEY,
  cook_id TEXT NOT NULL,
  name TEXT NOT NULL,
  description TEXT,
  price DECIMAL(10,2) NOT NULL CHECK (price > 0),
  cuisine TEXT NOT NULL,
  image_url TEXT,
  dietary_tags VARCHAR[],
  ingredients VARCHAR[],
  allergens VARCHAR[],
  preparation_time INTEGER NOT NULL DEFAULT 0 CHECK (preparation_time >= 0),
  is_active BOOLEAN NOT NULL DEFAULT TRUE,
  created_at TIMESTAMP NOT NULL,
  updated_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_dishes_cook ON dishes(cook_id);

CREATE TABLE IF NOT EXISTS batches (
  id TEXT PRIMARY KEY,
  dish_id TEXT NOT NULL,
  cook_id TEXT NOT NULL,
  scheduled_date TIMESTAMP NOT NULL,
  pickup_date TIMESTAMP NOT NULL,
  cutoff_date TIMESTAMP NOT NULL,
  capacity INTEGER NOT NULL CHECK (capacity > 0),
  current_orders INTEGER NOT NULL DEFAULT 0,
  status TEXT CHECK(status IN ('scheduled','in_progress','ready','completed','cancelled')) NOT NULL,
  is_active BOOLEAN NOT NULL DEFAULT TRUE,
  version INTEGER NOT NULL DEFAULT 0,
  created_at TIMESTAMP NOT NULL,
  updated_at TIMESTAMP NOT NULL,
  CHECK (cutoff_date <= pickup_date),
  CHECK (current_orders >= 0 AND current_orders <= capacity)
);

CREATE INDEX IF NOT EXISTS idx_batches_cook ON batches(cook_id);

CREATE TABLE IF NOT EXISTS orders (
  id TEXT PRIMARY KEY,
  buyer_id TEXT NOT NULL,
  batch_id TEXT NOT NULL,
  dish_id TEXT NOT NULL,
  quantity INTEGER NOT NULL CHECK (quantity > 0),
  unit_price DECIMAL(10,2) NOT NULL,
  total_price DECIMAL(10,2) NOT NULL,
  status TEXT CHECK(status IN ('pending','confirmed','preparing','ready','completed','cancelled','refunded')) NOT NULL,
  pickup_code TEXT,
  special_instructions TEXT,
  created_at TIMESTAMP NOT NULL,
  updated_at TIMESTAMP NOT NULL,
  confirmed_at TIMESTAMP,
  completed_at TIMESTAMP,
  cancelled_at TIMESTAMP
);

CREATE INDEX IF NOT EXISTS idx_orders_buyer ON orders(buyer_id);
CREATE INDEX IF NOT EXISTS idx_orders_batch ON orders(batch_id);

CREATE SEQUENCE IF NOT EXISTS order_events_id_seq;
CREATE TABLE IF NOT EXISTS order_events (
  event_id BIGINT DEFAULT nextval('order_events_id_seq') PRIMARY KEY,
  order_id TEXT NOT NULL,
  from_status TEXT,
  to_status TEXT NOT NULL,
  actor_id TEXT,
  actor_role TEXT,
  created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_order_events_order ON order_events(order_id);

CREATE TABLE IF NOT EXISTS idempotency_keys (
  buyer_id TEXT NOT NULL,
  idem_key TEXT NOT NULL,
  order_id TEXT NOT NULL,
  created_at TIMESTAMP NOT NULL,
  PRIMARY KEY (buyer_id, idem_key)
);

CREATE TABLE IF NOT EXISTS payments (
  id TEXT PRIMARY KEY,
  order_id TEXT NOT NULL,
  buyer_id TEXT NOT NULL,
  amount DECIMAL(10,2) NOT NULL CHECK (amount >= 0),
  currency TEXT NOT NULL,
  payment_method TEXT NOT NULL,
  gateway_reference TEXT,
  status TEXT CHECK(status IN ('succeeded','failed','refunded')) NOT NULL,
  applied BOOLEAN NOT NULL,
  created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_payments_order ON payments(order_id);

CREATE TABLE IF NOT EXISTS pickup_codes (
  code TEXT PRIMARY KEY,
  order_id TEXT NOT NULL,
  created_at TIMESTAMP NOT NULL
);

CREATE TABLE IF NOT EXISTS cook_stats (
  cook_id TEXT PRIMARY KEY,
  total_orders INTEGER NOT NULL DEFAULT 0,
  rating_sum INTEGER NOT NULL DEFAULT 0,
  rating_count INTEGER NOT NULL DEFAULT 0,
  updated_at TIMESTAMP
);

CREATE TABLE IF NOT EXISTS reviews (
  order_id TEXT PRIMARY KEY,
  buyer_id TEXT NOT NULL,
  cook_id TEXT NOT NULL,
  rating INTEGER NOT NULL CHECK (rating >= 1 AND rating <= 5),
  comment TEXT,
  created_at TIMESTAMP NOT NULL
);

CREATE SEQUENCE IF NOT EXISTS logs_id_seq;
CREATE TABLE IF NOT EXISTS logs (
  log_id BIGINT DEFAULT nextval('logs_id_seq') PRIMARY KEY,
  user_id TEXT,
  actor_id TEXT,
  action TEXT,
  detail_json JSON,
  created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_logs_action ON logs(action);
"""


def rows_to_dicts(cursor: duckdb.DuckDBPyConnection, rows: List[tuple]) -> List[Dict[str, Any]]:
    """按列名把查询结果转换为字典"""
    columns = [col[0] for col in cursor.description]
    return [dict(zip(columns, row)) for row in rows]


class DatabaseManager:
    """数据库管理器，封装所有数据库操作"""

    def __init__(self, db_path: Optional[str] = None, default_timeout: Optional[float] = None):
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._lock = threading.RLock()
        self._local = threading.local()
        self._cursors: List[duckdb.DuckDBPyConnection] = []
        self.db_path = db_path or self._get_db_path_from_settings()
        self.default_timeout = (
            default_timeout if default_timeout is not None
            else settings.persistence_timeout_seconds
        )

    def _get_db_path_from_settings(self) -> str:
        """从设置中获取数据库路径"""
        db_url = settings.database_url
        if db_url.startswith("duckdb://"):
            db_url = db_url.replace("duckdb://", "", 1)
        return db_url

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        """获取根连接，首次访问时建表"""
        with self._lock:
            if self._connection is None:
                if self.db_path != ":memory:":
                    Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
                self._connection = duckdb.connect(self.db_path)
                self._init_schema()
            return self._connection

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """当前线程专用的游标连接"""
        cur = getattr(self._local, "cursor", None)
        if cur is None:
            with self._lock:
                cur = self.connection.cursor()
                self._cursors.append(cur)
            self._local.cursor = cur
        return cur

    def _init_schema(self):
        """初始化数据库表结构"""
        try:
            self._connection.execute(SCHEMA_SQL)
        except duckdb.Error as e:
            raise DatabaseError(f"Failed to initialize schema: {e}")

    def init_database(self):
        """初始化数据库"""
        self.connection
        logger.info("Database ready at %s", self.db_path)

    @contextmanager
    def transaction(self, timeout: Optional[float] = None) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        """
        带超时的事务上下文管理器

        Args:
            timeout: 秒数，默认取 settings.persistence_timeout_seconds

        Raises:
            PersistenceTimeoutError: 执行被中断或超过截止时间
            PersistenceConflictError: DuckDB 报告事务冲突或唯一约束冲突
            DatabaseError: 其他数据库异常
        """
        timeout = self.default_timeout if timeout is None else timeout
        conn = self.cursor()
        deadline = time.monotonic() + timeout
        timer = threading.Timer(timeout, conn.interrupt)
        timer.daemon = True
        timer.start()
        try:
            conn.execute("BEGIN TRANSACTION")
            try:
                yield conn
                if time.monotonic() > deadline:
                    raise PersistenceTimeoutError(
                        "数据库事务超时", details={"timeout_seconds": timeout})
                conn.execute("COMMIT")
            except BaseException:
                self._rollback(conn)
                raise
        except BaseApplicationError:
            raise
        except duckdb.InterruptException as e:
            raise PersistenceTimeoutError(
                "数据库事务超时", details={"timeout_seconds": timeout, "error": str(e)})
        except (duckdb.TransactionException, duckdb.ConstraintException) as e:
            raise PersistenceConflictError("并发写冲突，请重试", details={"error": str(e)})
        except duckdb.Error as e:
            raise DatabaseError(f"数据库操作失败: {e}")
        finally:
            timer.cancel()

    def _rollback(self, conn: duckdb.DuckDBPyConnection):
        # 超时中断可能落在两条语句之间，由紧接着的 ROLLBACK 吃掉，需要再回滚一次
        for _ in range(2):
            try:
                conn.execute("ROLLBACK")
                return
            except duckdb.InterruptException as e:
                logger.debug("rollback interrupted, retrying: %s", e)
            except duckdb.Error as e:
                # 事务已被 DuckDB 中止时 ROLLBACK 会失败
                logger.debug("rollback skipped: %s", e)
                return

    def execute_query(self, query: str, params: list = None) -> List[Dict[str, Any]]:
        """执行查询并返回字典列表"""
        try:
            cur = self.cursor()
            rows = cur.execute(query, params or []).fetchall()
            return rows_to_dicts(cur, rows)
        except duckdb.Error as e:
            raise DatabaseError(f"Query execution failed: {e}")

    def execute_one(self, query: str, params: list = None) -> Optional[Dict[str, Any]]:
        """执行查询并返回单条结果"""
        rows = self.execute_query(query, params)
        return rows[0] if rows else None

    def execute(self, query: str, params: list = None):
        """执行写语句（自动提交）"""
        try:
            self.cursor().execute(query, params or [])
        except duckdb.Error as e:
            raise DatabaseError(f"Statement execution failed: {e}")

    def close(self):
        with self._lock:
            for cur in self._cursors:
                try:
                    cur.close()
                except duckdb.Error as e:
                    logger.debug("cursor close failed: %s", e)
            self._cursors = []
            self._local = threading.local()
            if self._connection is not None:
                self._connection.close()
                self._connection = None


def fetch_dict(conn: duckdb.DuckDBPyConnection, query: str, params: list = None) -> Optional[Dict[str, Any]]:
    """在给定连接（通常是事务内）上查询单行"""
    rows = conn.execute(query, params or []).fetchall()
    if not rows:
        return None
    return rows_to_dicts(conn, rows)[0]


def fetch_dicts(conn: duckdb.DuckDBPyConnection, query: str, params: list = None) -> List[Dict[str, Any]]:
    rows = conn.execute(query, params or []).fetchall()
    return rows_to_dicts(conn, rows)
