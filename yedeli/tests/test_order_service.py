"""
下单引擎测试
"""

import threading
from contextlib import contextmanager
from datetime import timedelta
from decimal import Decimal

import pytest

from yedeli.core.database import DatabaseManager
from yedeli.core.exceptions import (
    BatchNotFoundError,
    BatchUnavailableError,
    CapacityExceededError,
    CutoffPassedError,
    InvalidQuantityError,
    PermissionDeniedError,
    PersistenceConflictError,
    PersistenceTimeoutError,
    ValidationError,
)
from yedeli.core.retry import RetryPolicy
from yedeli.core.security import Identity, Role
from yedeli.models.order import OrderStatus
from yedeli.services.catalog_service import CatalogService
from yedeli.services.notification_service import NotificationService
from yedeli.services.order_service import OrderService
from yedeli.services.reservation_ledger import ReservationLedger
from yedeli.utils.time import utcnow

from .conftest import make_batch


def current_orders(services, batch_id):
    return services.catalog.get_batch(batch_id).current_orders


class TestPlaceOrder:
    """下单"""

    def test_end_to_end_capacity(self, services, cook, buyer):
        """容量20已占18：下2成功到20，再下1失败"""
        batch = make_batch(services, cook, capacity=20, current_orders=18)

        order = services.orders.place_order(buyer, batch.id, 2)
        assert order.status == OrderStatus.PENDING
        assert current_orders(services, batch.id) == 20

        with pytest.raises(CapacityExceededError):
            services.orders.place_order(buyer, batch.id, 1)
        assert current_orders(services, batch.id) == 20

    def test_price_snapshot(self, services, cook, buyer, sample_dish, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 3)
        assert order.unit_price == Decimal("12.50")
        assert order.total_price == Decimal("37.50")

        services.catalog.update_dish(cook, sample_dish.id, price=Decimal("15"))

        assert services.ledger.get_order(order.id).unit_price == Decimal("12.50")
        later = services.orders.place_order(buyer, sample_batch.id, 1)
        assert later.unit_price == Decimal("15.00")

    def test_cutoff_passed_even_with_capacity(self, services, cook, buyer):
        batch = make_batch(services, cook, cutoff_in=timedelta(minutes=-1))
        with pytest.raises(CutoffPassedError):
            services.orders.place_order(buyer, batch.id, 1)
        assert current_orders(services, batch.id) == 0

    def test_cutoff_uses_injected_clock(self, services, cook, buyer, sample_batch):
        services.orders.clock = lambda: sample_batch.cutoff_date + timedelta(seconds=1)
        with pytest.raises(CutoffPassedError):
            services.orders.place_order(buyer, sample_batch.id, 1)

    @pytest.mark.parametrize("quantity", [0, -2, 1.5, "2", True])
    def test_invalid_quantity(self, services, buyer, sample_batch, quantity):
        with pytest.raises(InvalidQuantityError):
            services.orders.place_order(buyer, sample_batch.id, quantity)

    def test_unknown_batch(self, services, buyer):
        with pytest.raises(BatchNotFoundError):
            services.orders.place_order(buyer, "missing", 1)

    def test_only_buyers_place_orders(self, services, cook, sample_batch):
        with pytest.raises(PermissionDeniedError):
            services.orders.place_order(cook, sample_batch.id, 1)

    def test_deactivated_batch_keeps_existing_orders(self, services, cook, buyer, sample_batch):
        """停用批次只阻止新订单"""
        order = services.orders.place_order(buyer, sample_batch.id, 2)
        services.catalog.set_batch_active(cook, sample_batch.id, False)

        with pytest.raises(BatchUnavailableError):
            services.orders.place_order(buyer, sample_batch.id, 1)

        assert services.ledger.get_order(order.id).status == OrderStatus.PENDING
        assert current_orders(services, sample_batch.id) == 2

    def test_deactivated_dish_rolls_back_reservation(self, services, cook, buyer, sample_dish, sample_batch):
        services.catalog.update_dish(cook, sample_dish.id, is_active=False)
        with pytest.raises(BatchUnavailableError):
            services.orders.place_order(buyer, sample_batch.id, 1)
        assert current_orders(services, sample_batch.id) == 0
        assert services.ledger.orders_for_batch(sample_batch.id) == []

    def test_special_instructions_saved(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1, special_instructions="不要香菜")
        assert services.ledger.get_order(order.id).special_instructions == "不要香菜"

    def test_special_instructions_too_long(self, services, buyer, sample_batch):
        with pytest.raises(ValidationError):
            services.orders.place_order(buyer, sample_batch.id, 1, special_instructions="辣" * 501)
        assert current_orders(services, sample_batch.id) == 0

    def test_placement_is_logged_in_events_and_audit(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        events = services.ledger.events_for(order.id)
        assert [(e.from_status, e.to_status) for e in events] == [(None, OrderStatus.PENDING)]

        audit = services.db.execute_query(
            "SELECT action, actor_id FROM logs WHERE action = 'order_placed'")
        assert audit == [{"action": "order_placed", "actor_id": buyer.user_id}]


class TestIdempotency:
    """幂等键"""

    def test_resubmission_returns_original(self, services, buyer, sample_batch):
        first = services.orders.place_order(buyer, sample_batch.id, 2, idempotency_key="k-1")
        again = services.orders.place_order(buyer, sample_batch.id, 2, idempotency_key="k-1")

        assert again.id == first.id
        assert current_orders(services, sample_batch.id) == 2
        assert len(services.ledger.orders_for_batch(sample_batch.id)) == 1

    def test_keys_are_scoped_per_buyer(self, services, buyer, other_buyer, sample_batch):
        a = services.orders.place_order(buyer, sample_batch.id, 1, idempotency_key="same")
        b = services.orders.place_order(other_buyer, sample_batch.id, 1, idempotency_key="same")
        assert a.id != b.id
        assert current_orders(services, sample_batch.id) == 2

    def test_concurrent_duplicates_create_one_order(self, services, buyer, sample_batch):
        results, errors = [], []

        def submit():
            try:
                results.append(services.orders.place_order(
                    buyer, sample_batch.id, 1, idempotency_key="retry-storm"))
            except Exception as e:  # 收集到主线程断言
                errors.append(e)

        threads = [threading.Thread(target=submit) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len({o.id for o in results}) == 1
        assert current_orders(services, sample_batch.id) == 1

    def test_lock_tables_do_not_grow(self, services, cook):
        batch = make_batch(services, cook, capacity=500)
        for i in range(300):
            identity = Identity(user_id=f"buyer-{i % 7}", role=Role.BUYER)
            services.orders.place_order(identity, batch.id, 1, idempotency_key=f"key-{i}")

        assert current_orders(services, batch.id) == 300
        assert len(services.orders.key_locks) == 0
        assert len(services.orders.batch_locks) == 0

    def test_replay_after_rejection_is_not_cached(self, services, cook, buyer):
        """被拒绝的请求不占用幂等键"""
        batch = make_batch(services, cook, capacity=2, current_orders=2)
        with pytest.raises(CapacityExceededError):
            services.orders.place_order(buyer, batch.id, 1, idempotency_key="k")
        assert services.ledger.find_by_key(buyer.user_id, "k") is None


class TestConcurrentAdmission:
    """并发下单压力测试"""

    def _race(self, services, batch_id, quantities):
        admitted, rejected, unexpected = [], [], []
        start = threading.Barrier(len(quantities))

        def worker(i, qty):
            identity = Identity(user_id=f"buyer-{i}", role=Role.BUYER)
            start.wait()
            try:
                admitted.append(services.orders.place_order(identity, batch_id, qty))
            except CapacityExceededError:
                rejected.append(qty)
            except Exception as e:  # 收集到主线程断言
                unexpected.append(e)

        threads = [threading.Thread(target=worker, args=(i, q)) for i, q in enumerate(quantities)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert unexpected == []
        return admitted, rejected

    def test_exactly_capacity_admitted(self, services, cook):
        batch = make_batch(services, cook, capacity=10)
        admitted, rejected = self._race(services, batch.id, [1] * 25)

        assert len(admitted) == 10
        assert len(rejected) == 15
        assert current_orders(services, batch.id) == 10

    def test_counter_matches_admitted_quantity(self, services, cook):
        batch = make_batch(services, cook, capacity=15)
        admitted, _ = self._race(services, batch.id, [1, 2, 3] * 8)

        total = sum(o.quantity for o in admitted)
        counter = current_orders(services, batch.id)
        assert 0 <= counter <= 15
        assert counter == total
        assert services.ledger.reconcile(batch.id)["repaired"] is False

    def test_batches_are_independent(self, services, cook, sample_dish):
        a = make_batch(services, cook, sample_dish, capacity=5)
        b = make_batch(services, cook, sample_dish, capacity=5)
        admitted_a, _ = self._race(services, a.id, [1] * 8)
        admitted_b, _ = self._race(services, b.id, [1] * 8)
        assert len(admitted_a) == len(admitted_b) == 5


class FlakyDatabase(DatabaseManager):
    """前 failures 次事务直接抛出可重试异常"""

    def __init__(self, failures=0, error=PersistenceTimeoutError):
        super().__init__(":memory:")
        self.failures = failures
        self.error = error
        self.attempts = 0

    @contextmanager
    def transaction(self, timeout=None):
        if self.failures > 0:
            self.failures -= 1
            self.attempts += 1
            raise self.error("模拟持久化故障")
        with super().transaction(timeout) as conn:
            yield conn


class TestRetry:
    """持久化故障重试"""

    def _engine(self, db, attempts=3):
        catalog = CatalogService(db)
        ledger = ReservationLedger(db)
        sleeps = []
        orders = OrderService(
            db, catalog, ledger, NotificationService(),
            retry_policy=RetryPolicy(max_attempts=attempts, backoff_ms=10, sleep=sleeps.append),
        )
        return catalog, orders, sleeps

    def test_transient_failures_are_retried(self, cook, buyer):
        db = FlakyDatabase()
        catalog, orders, sleeps = self._engine(db)
        dish = catalog.create_dish(cook, "饺子", Decimal("8"), "chinese")
        batch = make_batch_on(catalog, cook, dish)

        db.failures = 2
        order = orders.place_order(buyer, batch.id, 1)

        assert order.quantity == 1
        assert catalog.get_batch(batch.id).current_orders == 1
        assert sleeps == [0.01, 0.01]
        db.close()

    @pytest.mark.parametrize("error", [PersistenceTimeoutError, PersistenceConflictError])
    def test_exhausted_retries_surface_capacity_exceeded(self, cook, buyer, error):
        db = FlakyDatabase(error=error)
        catalog, orders, _ = self._engine(db)
        dish = catalog.create_dish(cook, "饺子", Decimal("8"), "chinese")
        batch = make_batch_on(catalog, cook, dish)

        db.failures = 10
        with pytest.raises(CapacityExceededError):
            orders.place_order(buyer, batch.id, 1)

        assert db.attempts == 3
        db.failures = 0
        assert catalog.get_batch(batch.id).current_orders == 0
        db.close()

    def test_business_errors_are_not_retried(self, cook, buyer):
        db = FlakyDatabase()
        catalog, orders, sleeps = self._engine(db)
        dish = catalog.create_dish(cook, "饺子", Decimal("8"), "chinese")
        batch = make_batch_on(catalog, cook, dish)

        with pytest.raises(InvalidQuantityError):
            orders.place_order(buyer, batch.id, 0)
        assert sleeps == []
        db.close()


def make_batch_on(catalog, cook, dish):
    now = utcnow()
    return catalog.create_batch(
        cook, dish.id,
        scheduled_date=now + timedelta(hours=3),
        pickup_date=now + timedelta(hours=4),
        cutoff_date=now + timedelta(hours=2),
        capacity=5,
    )


class TestOrderQueries:
    """订单查询"""

    def test_visibility(self, services, cook, other_cook, buyer, other_buyer, admin, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)

        assert services.orders.get_order(buyer, order.id).id == order.id
        assert services.orders.get_order(cook, order.id).id == order.id
        assert services.orders.get_order(admin, order.id).id == order.id
        with pytest.raises(PermissionDeniedError):
            services.orders.get_order(other_buyer, order.id)
        with pytest.raises(PermissionDeniedError):
            services.orders.get_order(other_cook, order.id)

    def test_list_for_buyer_and_batch(self, services, cook, other_cook, buyer, other_buyer, sample_batch):
        mine = services.orders.place_order(buyer, sample_batch.id, 1)
        services.orders.place_order(other_buyer, sample_batch.id, 2)

        assert [o.id for o in services.orders.list_orders_for_buyer(buyer)] == [mine.id]
        assert services.orders.list_orders_for_buyer(buyer, OrderStatus.CANCELLED) == []
        assert len(services.orders.list_orders_for_batch(cook, sample_batch.id)) == 2
        with pytest.raises(PermissionDeniedError):
            services.orders.list_orders_for_batch(other_cook, sample_batch.id)
