"""
菜品与批次服务
菜品和批次的创建、修改、状态管理，是容量、截单时间和价格的唯一来源

业务规则：
- 只有厨师（或管理员）能创建菜品和批次，且只能操作自己的
- 批次截单时间不能晚于取餐时间
- 停用菜品/批次、取消批次只阻止新的下单，已下的订单不受影响
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from ..core.database import DatabaseManager, fetch_dict
from ..core.locks import KeyedLocks
from ..core.exceptions import (
    BatchNotFoundError,
    DishNotFoundError,
    InvalidTransitionError,
    PermissionDeniedError,
    ValidationError,
)
from ..core.security import Identity, Role
from ..models.base import quantize_money
from ..models.catalog import (
    BATCH_TRANSITIONS,
    Batch,
    BatchStatus,
    CookStats,
    CuisineType,
    Dish,
)
from ..utils.time import utcnow, to_db

logger = logging.getLogger(__name__)

DISH_COLUMNS = (
    "id, cook_id, name, description, price, cuisine, image_url, dietary_tags, ingredients, "
    "allergens, preparation_time, is_active, created_at, updated_at"
)
LIST_COLUMNS = {"dietary_tags", "ingredients", "allergens"}
BATCH_COLUMNS = (
    "id, dish_id, cook_id, scheduled_date, pickup_date, cutoff_date, capacity, "
    "current_orders, status, is_active, version, created_at, updated_at"
)


def clean_tags(values: Optional[List[str]]) -> List[str]:
    """去掉空白和重复项，保持原有顺序"""
    cleaned = []
    for value in values or []:
        value = value.strip()
        if value and value not in cleaned:
            cleaned.append(value)
    return cleaned


class CatalogService:
    """菜品与批次服务"""

    def __init__(self, db: DatabaseManager, batch_locks: Optional[KeyedLocks] = None):
        self.db = db
        self.batch_locks = batch_locks or KeyedLocks()

    # ---- 菜品 ----

    def create_dish(self, identity: Identity, name: str, price: Decimal,
                    cuisine: CuisineType, description: Optional[str] = None, *,
                    image_url: Optional[str] = None,
                    dietary_tags: Optional[List[str]] = None,
                    ingredients: Optional[List[str]] = None,
                    allergens: Optional[List[str]] = None,
                    preparation_time: int = 0) -> Dish:
        """创建菜品"""
        identity.require(Role.COOK, Role.ADMIN)
        price = quantize_money(price)
        if price <= 0:
            raise ValidationError("菜品价格必须大于0")
        if preparation_time < 0:
            raise ValidationError("准备时间不能为负数")

        now = utcnow()
        dish = Dish(
            id=str(uuid.uuid4()),
            cook_id=identity.user_id,
            name=name,
            description=description,
            price=price,
            cuisine=cuisine,
            image_url=image_url,
            dietary_tags=clean_tags(dietary_tags),
            ingredients=clean_tags(ingredients),
            allergens=clean_tags(allergens),
            preparation_time=preparation_time,
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        with self.db.transaction() as conn:
            conn.execute(
                f"""INSERT INTO dishes({DISH_COLUMNS})
                    VALUES (?,?,?,?,?,?,?,?::VARCHAR[],?::VARCHAR[],?::VARCHAR[],?,?,?,?)""",
                [dish.id, dish.cook_id, dish.name, dish.description, dish.price,
                 dish.cuisine.value, dish.image_url, dish.dietary_tags, dish.ingredients,
                 dish.allergens, dish.preparation_time, dish.is_active, to_db(now), to_db(now)],
            )
            conn.execute(
                "INSERT INTO cook_stats(cook_id, updated_at) VALUES (?, ?) ON CONFLICT DO NOTHING",
                [dish.cook_id, to_db(now)],
            )
        logger.info("dish %s created by cook %s", dish.id, dish.cook_id)
        return dish

    def update_dish(self, identity: Identity, dish_id: str, *, name: Optional[str] = None,
                    description: Optional[str] = None, price: Optional[Decimal] = None,
                    cuisine: Optional[CuisineType] = None, is_active: Optional[bool] = None,
                    image_url: Optional[str] = None,
                    dietary_tags: Optional[List[str]] = None,
                    ingredients: Optional[List[str]] = None,
                    allergens: Optional[List[str]] = None,
                    preparation_time: Optional[int] = None) -> Dish:
        """
        修改菜品

        已下订单持有各自的价格快照，改价只影响之后的下单。
        标签类字段整体替换，传空列表表示清空。
        """
        dish = self.get_dish(dish_id)
        self._require_owner(identity, dish.cook_id)

        changes = {}
        if name is not None:
            changes["name"] = name
        if description is not None:
            changes["description"] = description
        if price is not None:
            price = quantize_money(price)
            if price <= 0:
                raise ValidationError("菜品价格必须大于0")
            changes["price"] = price
        if cuisine is not None:
            changes["cuisine"] = CuisineType(cuisine).value
        if is_active is not None:
            changes["is_active"] = is_active
        if image_url is not None:
            changes["image_url"] = image_url
        if preparation_time is not None:
            if preparation_time < 0:
                raise ValidationError("准备时间不能为负数")
            changes["preparation_time"] = preparation_time
        for column, values in (("dietary_tags", dietary_tags), ("ingredients", ingredients),
                               ("allergens", allergens)):
            if values is not None:
                changes[column] = clean_tags(values)
        if not changes:
            return dish

        changes["updated_at"] = to_db(utcnow())
        assignments = ", ".join(
            f"{col} = ?::VARCHAR[]" if col in LIST_COLUMNS else f"{col} = ?" for col in changes)
        self.db.execute(
            f"UPDATE dishes SET {assignments} WHERE id = ?",
            [*changes.values(), dish_id],
        )
        return self.get_dish(dish_id)

    def get_dish(self, dish_id: str) -> Dish:
        row = self.db.execute_one(f"SELECT {DISH_COLUMNS} FROM dishes WHERE id = ?", [dish_id])
        if not row:
            raise DishNotFoundError("菜品不存在", details={"dish_id": dish_id})
        return Dish(**row)

    def list_dishes(self, cook_id: str, include_inactive: bool = False) -> List[Dish]:
        query = f"SELECT {DISH_COLUMNS} FROM dishes WHERE cook_id = ?"
        if not include_inactive:
            query += " AND is_active"
        rows = self.db.execute_query(query + " ORDER BY created_at", [cook_id])
        return [Dish(**r) for r in rows]

    # ---- 批次 ----

    def create_batch(self, identity: Identity, dish_id: str, scheduled_date: datetime,
                     pickup_date: datetime, cutoff_date: datetime, capacity: int) -> Batch:
        """创建批次"""
        identity.require(Role.COOK, Role.ADMIN)
        dish = self.get_dish(dish_id)
        self._require_owner(identity, dish.cook_id)

        if not dish.is_active:
            raise ValidationError("菜品已停用，不能创建批次", details={"dish_id": dish_id})
        if capacity < 1:
            raise ValidationError("批次容量必须为正整数")
        if cutoff_date > pickup_date:
            raise ValidationError("截单时间不能晚于取餐时间")

        now = utcnow()
        batch = Batch(
            id=str(uuid.uuid4()),
            dish_id=dish.id,
            cook_id=dish.cook_id,
            scheduled_date=scheduled_date,
            pickup_date=pickup_date,
            cutoff_date=cutoff_date,
            capacity=capacity,
            current_orders=0,
            status=BatchStatus.SCHEDULED,
            is_active=True,
            version=0,
            created_at=now,
            updated_at=now,
        )
        self.db.execute(
            f"INSERT INTO batches({BATCH_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
            [batch.id, batch.dish_id, batch.cook_id, to_db(batch.scheduled_date),
             to_db(batch.pickup_date), to_db(batch.cutoff_date), batch.capacity,
             0, batch.status.value, True, 0, to_db(now), to_db(now)],
        )
        logger.info("batch %s created for dish %s capacity=%d", batch.id, dish.id, capacity)
        return batch

    def get_batch(self, batch_id: str, conn=None) -> Batch:
        query = f"SELECT {BATCH_COLUMNS} FROM batches WHERE id = ?"
        row = fetch_dict(conn, query, [batch_id]) if conn is not None else self.db.execute_one(query, [batch_id])
        if not row:
            raise BatchNotFoundError("批次不存在", details={"batch_id": batch_id})
        return Batch(**row)

    def list_open_batches(self, now: Optional[datetime] = None) -> List[Batch]:
        """
        当前接受下单的批次

        剩余容量只用于展示，下单时以服务端校验为准。
        """
        now = now or utcnow()
        rows = self.db.execute_query(
            f"""SELECT {BATCH_COLUMNS} FROM batches
                WHERE is_active AND status = 'scheduled' AND cutoff_date > ?
                ORDER BY cutoff_date""",
            [to_db(now)],
        )
        return [Batch(**r) for r in rows]

    def set_batch_active(self, identity: Identity, batch_id: str, is_active: bool) -> Batch:
        """启用/停用批次"""
        batch = self.get_batch(batch_id)
        self._require_owner(identity, batch.cook_id)
        with self.batch_locks.hold(batch_id), self.db.transaction() as conn:
            conn.execute(
                "UPDATE batches SET is_active = ?, version = version + 1, updated_at = ? WHERE id = ?",
                [is_active, to_db(utcnow()), batch_id],
            )
        logger.info("batch %s active=%s by %s", batch_id, is_active, identity.user_id)
        return self.get_batch(batch_id)

    def update_batch_status(self, identity: Identity, batch_id: str, status: BatchStatus) -> Batch:
        """批次状态流转"""
        target = BatchStatus(status)
        with self.batch_locks.hold(batch_id):
            batch = self.get_batch(batch_id)
            self._require_owner(identity, batch.cook_id)
            self._validate_batch_transition(batch.status, target)
            with self.db.transaction() as conn:
                conn.execute(
                    """UPDATE batches SET status = ?, version = version + 1, updated_at = ?
                       WHERE id = ? AND status = ?""",
                    [target.value, to_db(utcnow()), batch_id, batch.status.value],
                )
        logger.info("batch %s %s -> %s", batch_id, batch.status.value, target.value)
        return self.get_batch(batch_id)

    def sweep_batches(self, now: Optional[datetime] = None) -> int:
        """已过截单时间的排期批次进入制作中，返回变更数量"""
        now = now or utcnow()
        due = self.db.execute_query(
            "SELECT id FROM batches WHERE status = 'scheduled' AND cutoff_date <= ?",
            [to_db(now)],
        )
        moved = 0
        for row in due:
            with self.batch_locks.hold(row["id"]), self.db.transaction() as conn:
                updated = conn.execute(
                    """UPDATE batches SET status = 'in_progress', version = version + 1, updated_at = ?
                       WHERE id = ? AND status = 'scheduled' AND cutoff_date <= ?
                       RETURNING id""",
                    [to_db(now), row["id"], to_db(now)],
                ).fetchone()
            if updated:
                moved += 1
        if moved:
            logger.info("%d batches moved to in_progress after cutoff", moved)
        return moved

    # ---- 厨师统计 ----

    def get_cook_stats(self, cook_id: str) -> CookStats:
        row = self.db.execute_one(
            "SELECT cook_id, total_orders, rating_sum, rating_count FROM cook_stats WHERE cook_id = ?",
            [cook_id],
        )
        if not row:
            return CookStats(cook_id=cook_id)
        return CookStats(**row)

    # ---- 内部 ----

    def _require_owner(self, identity: Identity, cook_id: str):
        if identity.is_privileged:
            return
        if identity.role != Role.COOK or identity.user_id != cook_id:
            raise PermissionDeniedError("只能操作自己的菜品和批次")

    @staticmethod
    def _validate_batch_transition(current: BatchStatus, target: BatchStatus):
        if target not in BATCH_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
