"""
评价服务
买家对自己已完成的订单评分（1-5），每个订单只能评价一次，
评分累计到厨师的汇总数据中。
"""

import logging
from typing import List, Optional

from ..core.database import DatabaseManager, fetch_dict
from ..core.exceptions import (
    DuplicateReviewError,
    OrderNotCompletedError,
    PermissionDeniedError,
    ValidationError,
)
from ..core.security import Identity, Role
from ..models.catalog import CookStats
from ..models.order import OrderStatus
from ..models.review import Review
from .catalog_service import CatalogService
from .reservation_ledger import ReservationLedger
from ..utils.time import utcnow, to_db

logger = logging.getLogger(__name__)

REVIEW_COLUMNS = "order_id, buyer_id, cook_id, rating, comment, created_at"


class ReviewService:
    """评价服务"""

    def __init__(self, db: DatabaseManager, catalog: CatalogService, ledger: ReservationLedger):
        self.db = db
        self.catalog = catalog
        self.ledger = ledger

    def submit_review(self, identity: Identity, order_id: str, rating: int,
                      comment: Optional[str] = None) -> Review:
        """
        提交评价

        Raises:
            ValidationError: 评分不在 1-5 之间
            PermissionDeniedError: 不是订单的买家
            OrderNotCompletedError: 订单尚未完成
            DuplicateReviewError: 已经评价过
        """
        identity.require(Role.BUYER)
        if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
            raise ValidationError("评分必须是1到5的整数", details={"rating": rating})

        order = self.ledger.get_order(order_id)
        if order.buyer_id != identity.user_id:
            raise PermissionDeniedError("只能评价自己的订单")
        if order.status != OrderStatus.COMPLETED:
            raise OrderNotCompletedError(
                "订单完成后才能评价", details={"status": order.status.value})

        cook_id = self.catalog.get_batch(order.batch_id).cook_id
        now = utcnow()
        with self.db.transaction() as conn:
            inserted = conn.execute(
                f"""INSERT INTO reviews({REVIEW_COLUMNS}) VALUES (?,?,?,?,?,?)
                    ON CONFLICT DO NOTHING RETURNING order_id""",
                [order_id, identity.user_id, cook_id, rating, comment, to_db(now)],
            ).fetchone()
            if inserted is None:
                raise DuplicateReviewError("该订单已评价", details={"order_id": order_id})

            stats = fetch_dict(conn, "SELECT cook_id FROM cook_stats WHERE cook_id = ?", [cook_id])
            if stats:
                conn.execute(
                    """UPDATE cook_stats
                       SET rating_sum = rating_sum + ?, rating_count = rating_count + 1, updated_at = ?
                       WHERE cook_id = ?""",
                    [rating, to_db(now), cook_id],
                )
            else:
                conn.execute(
                    """INSERT INTO cook_stats(cook_id, rating_sum, rating_count, updated_at)
                       VALUES (?, ?, 1, ?)""",
                    [cook_id, rating, to_db(now)],
                )

        logger.info("order %s reviewed rating=%d cook=%s", order_id, rating, cook_id)
        return Review(order_id=order_id, buyer_id=identity.user_id, cook_id=cook_id,
                      rating=rating, comment=comment, created_at=now)

    def reviews_for_cook(self, cook_id: str) -> List[Review]:
        rows = self.db.execute_query(
            f"SELECT {REVIEW_COLUMNS} FROM reviews WHERE cook_id = ? ORDER BY created_at DESC",
            [cook_id],
        )
        return [Review(**r) for r in rows]

    def cook_rating(self, cook_id: str) -> CookStats:
        return self.catalog.get_cook_stats(cook_id)
