"""
支付回调与评价测试
"""

from decimal import Decimal

import pytest

from yedeli.core.exceptions import (
    DuplicateReviewError,
    InvalidTransitionError,
    OrderNotCompletedError,
    PermissionDeniedError,
    ValidationError,
)
from yedeli.models.order import OrderStatus
from yedeli.services.payment_service import PaymentOutcome

from .conftest import make_batch


def complete(services, order_id, cook):
    for status in (OrderStatus.CONFIRMED, OrderStatus.PREPARING,
                   OrderStatus.READY, OrderStatus.COMPLETED):
        services.lifecycle.transition(order_id, status, cook)


class TestPaymentCallback:
    """支付回调"""

    def test_success_confirms_order(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 2)
        confirmed = services.payments.handle_payment_result(order.id, PaymentOutcome.SUCCEEDED)

        assert confirmed.status == OrderStatus.CONFIRMED
        assert confirmed.pickup_code
        events = services.ledger.events_for(order.id)
        assert events[-1].actor_role == "system"

    def test_repeated_callback_is_noop(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 2)
        first = services.payments.handle_payment_result(order.id, "succeeded")
        second = services.payments.handle_payment_result(order.id, "succeeded")

        assert second.pickup_code == first.pickup_code
        assert len(services.ledger.events_for(order.id)) == 2

    def test_failure_cancels_and_releases(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 5)
        cancelled = services.payments.handle_payment_result(order.id, PaymentOutcome.FAILED)

        assert cancelled.status == OrderStatus.CANCELLED
        assert services.catalog.get_batch(sample_batch.id).current_orders == 0

        # 重复的失败回调不会再次归还
        services.payments.handle_payment_result(order.id, PaymentOutcome.FAILED)
        assert services.catalog.get_batch(sample_batch.id).current_orders == 0

    def test_refund_after_confirmation(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        services.payments.handle_payment_result(order.id, PaymentOutcome.SUCCEEDED)
        refunded = services.payments.handle_payment_result(order.id, PaymentOutcome.REFUNDED)

        assert refunded.status == OrderStatus.REFUNDED
        assert services.catalog.get_batch(sample_batch.id).current_orders == 0

    def test_success_on_cancelled_order_is_rejected(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        services.lifecycle.transition(order.id, OrderStatus.CANCELLED, buyer)

        with pytest.raises(InvalidTransitionError):
            services.payments.handle_payment_result(order.id, PaymentOutcome.SUCCEEDED)


class TestPaymentRecords:
    """支付记录"""

    def test_each_callback_is_recorded(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 2)
        services.payments.handle_payment_result(order.id, PaymentOutcome.SUCCEEDED)
        services.payments.handle_payment_result(order.id, PaymentOutcome.SUCCEEDED)

        payments = services.payments.payments_for_order(order.id)
        assert [p.applied for p in payments] == [True, False]
        first = payments[0]
        assert first.amount == Decimal("25.00")
        assert first.currency == "CHF"
        assert first.payment_method == "card"
        assert first.status == PaymentOutcome.SUCCEEDED
        assert first.buyer_id == buyer.user_id
        assert first.created_at.tzinfo is not None

    def test_gateway_details_are_kept(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        services.payments.handle_payment_result(
            order.id, "succeeded", amount=Decimal("12.5"), currency="eur",
            payment_method="twint", gateway_reference="pi_123")

        payment = services.payments.payments_for_order(order.id)[0]
        assert payment.amount == Decimal("12.50")
        assert payment.currency == "EUR"
        assert payment.payment_method == "twint"
        assert payment.gateway_reference == "pi_123"

    def test_rejected_callback_is_recorded(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        services.lifecycle.transition(order.id, OrderStatus.CANCELLED, buyer)

        with pytest.raises(InvalidTransitionError):
            services.payments.handle_payment_result(order.id, PaymentOutcome.SUCCEEDED)

        payments = services.payments.payments_for_order(order.id)
        assert [(p.status, p.applied) for p in payments] == [(PaymentOutcome.SUCCEEDED, False)]

    def test_refund_flow_history(self, services, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        services.payments.handle_payment_result(order.id, PaymentOutcome.SUCCEEDED)
        services.payments.handle_payment_result(order.id, PaymentOutcome.REFUNDED)

        statuses = [p.status for p in services.payments.payments_for_order(order.id)]
        assert statuses == [PaymentOutcome.SUCCEEDED, PaymentOutcome.REFUNDED]


class TestReviews:
    """评价"""

    def test_review_updates_cook_rating(self, services, cook, buyer, other_buyer):
        batch = make_batch(services, cook)
        first = services.orders.place_order(buyer, batch.id, 1)
        second = services.orders.place_order(other_buyer, batch.id, 1)
        complete(services, first.id, cook)
        complete(services, second.id, cook)

        services.reviews.submit_review(buyer, first.id, 5, "好吃")
        review = services.reviews.submit_review(other_buyer, second.id, 4)

        assert review.cook_id == cook.user_id
        stats = services.reviews.cook_rating(cook.user_id)
        assert stats.rating_count == 2
        assert stats.rating == Decimal("4.50")
        assert stats.total_orders == 2
        assert len(services.reviews.reviews_for_cook(cook.user_id)) == 2

    def test_only_once_per_order(self, services, cook, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        complete(services, order.id, cook)
        services.reviews.submit_review(buyer, order.id, 3)

        with pytest.raises(DuplicateReviewError):
            services.reviews.submit_review(buyer, order.id, 5)
        assert services.reviews.cook_rating(cook.user_id).rating_count == 1

    def test_order_must_be_completed(self, services, cook, buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        services.lifecycle.transition(order.id, OrderStatus.CONFIRMED, cook)

        with pytest.raises(OrderNotCompletedError):
            services.reviews.submit_review(buyer, order.id, 5)
        assert services.reviews.cook_rating(cook.user_id).rating is None

    def test_only_the_buyer_reviews(self, services, cook, buyer, other_buyer, sample_batch):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        complete(services, order.id, cook)

        with pytest.raises(PermissionDeniedError):
            services.reviews.submit_review(other_buyer, order.id, 5)
        with pytest.raises(PermissionDeniedError):
            services.reviews.submit_review(cook, order.id, 5)

    @pytest.mark.parametrize("rating", [0, 6, True])
    def test_rating_range(self, services, cook, buyer, sample_batch, rating):
        order = services.orders.place_order(buyer, sample_batch.id, 1)
        complete(services, order.id, cook)
        with pytest.raises(ValidationError):
            services.reviews.submit_review(buyer, order.id, rating)
