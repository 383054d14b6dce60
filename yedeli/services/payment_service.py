"""
支付回调处理
支付网关异步通知扣款结果，这里把结果映射为订单状态流转（以系统身份执行），
并把每次回调写入 payments 表备查。
"""

import logging
import uuid
from decimal import Decimal
from typing import List, Optional

from ..config.settings import Settings, settings as default_settings
from ..core.database import DatabaseManager
from ..core.exceptions import InvalidTransitionError
from ..core.security import SYSTEM_ACTOR
from ..models.order import Order, OrderStatus
from ..models.payment import Payment, PaymentOutcome
from .lifecycle_service import OrderLifecycleService
from ..utils.time import utcnow, to_db

logger = logging.getLogger(__name__)

PAYMENT_COLUMNS = (
    "id, order_id, buyer_id, amount, currency, payment_method, gateway_reference, "
    "status, applied, created_at"
)

OUTCOME_TARGETS = {
    PaymentOutcome.SUCCEEDED: OrderStatus.CONFIRMED,
    PaymentOutcome.FAILED: OrderStatus.CANCELLED,
    PaymentOutcome.REFUNDED: OrderStatus.REFUNDED,
}


class PaymentService:
    """支付结果处理"""

    def __init__(self, db: DatabaseManager, lifecycle: OrderLifecycleService,
                 settings: Settings = default_settings):
        self.db = db
        self.lifecycle = lifecycle
        self.default_currency = settings.payment_currency

    def handle_payment_result(self, order_id: str, outcome: PaymentOutcome, *,
                              amount: Optional[Decimal] = None,
                              currency: Optional[str] = None,
                              payment_method: str = "card",
                              gateway_reference: Optional[str] = None) -> Order:
        """
        处理支付结果

        网关可能重复回调，订单已处于目标状态时直接返回，不再流转。
        其他状态下的非法流转照常抛出 InvalidTransitionError。
        两种情况都会记录这次回调，只是 applied 为 False。

        Args:
            amount: 网关报告的金额，缺省为订单总价
        """
        outcome = PaymentOutcome(outcome)
        target = OUTCOME_TARGETS[outcome]
        order = self.lifecycle.ledger.get_order(order_id)
        record = dict(
            order=order,
            outcome=outcome,
            amount=order.total_price if amount is None else amount,
            currency=(currency or self.default_currency).upper(),
            payment_method=payment_method,
            gateway_reference=gateway_reference,
        )

        if order.status == target:
            logger.info("payment %s for order %s already applied", outcome.value, order_id)
            self._record(applied=False, **record)
            return order

        try:
            result = self.lifecycle.transition(order_id, target, SYSTEM_ACTOR)
        except InvalidTransitionError:
            logger.warning("payment %s rejected for order %s in status %s",
                           outcome.value, order_id, order.status.value)
            self._record(applied=False, **record)
            raise

        self._record(applied=True, **record)
        return result

    def payments_for_order(self, order_id: str) -> List[Payment]:
        rows = self.db.execute_query(
            f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE order_id = ? ORDER BY created_at",
            [order_id],
        )
        return [Payment(**r) for r in rows]

    def _record(self, order: Order, outcome: PaymentOutcome, amount: Decimal, currency: str,
                payment_method: str, gateway_reference: Optional[str], applied: bool) -> Payment:
        payment = Payment(
            id=str(uuid.uuid4()),
            order_id=order.id,
            buyer_id=order.buyer_id,
            amount=amount,
            currency=currency,
            payment_method=payment_method,
            gateway_reference=gateway_reference,
            status=outcome,
            applied=applied,
            created_at=utcnow(),
        )
        with self.db.transaction() as conn:
            conn.execute(
                f"INSERT INTO payments({PAYMENT_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?)",
                [payment.id, payment.order_id, payment.buyer_id, payment.amount, payment.currency,
                 payment.payment_method, payment.gateway_reference, payment.status.value,
                 payment.applied, to_db(payment.created_at)],
            )
        return payment
