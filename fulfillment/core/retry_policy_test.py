from datetime import datetime, timedelta

from fulfillment.core.models import make_idempotency_key
from fulfillment.core.retry_policy import RetryPolicy


class TestRetryPolicy:
    def test_backoff_grows_exponentially(self):
        policy = RetryPolicy()

        assert policy.backoff(1) == timedelta(seconds=30)
        assert policy.backoff(2) == timedelta(seconds=60)
        assert policy.backoff(3) == timedelta(seconds=120)

    def test_backoff_is_monotonic_and_capped(self):
        policy = RetryPolicy(backoff_cap_seconds=300)

        delays = [policy.backoff(n) for n in range(1, 20)]

        assert delays == sorted(delays)
        assert max(delays) == timedelta(seconds=300)

    def test_next_retry_at(self):
        now = datetime(2030, 1, 1, 12, 0)

        assert RetryPolicy().next_retry_at(2, now) == now + timedelta(seconds=60)

    def test_exhausted_at_max_retries(self):
        policy = RetryPolicy(max_retries=3)

        assert not policy.is_exhausted(2)
        assert policy.is_exhausted(3)


class TestIdempotencyKey:
    def test_same_edge_collides(self):
        first = make_idempotency_key("order_line_item", "li_1", "line_item.status_changed", "a->b")
        second = make_idempotency_key("order_line_item", "li_1", "line_item.status_changed", "a->b")

        assert first == second
        assert len(first) == 64

    def test_different_edge_differs(self):
        first = make_idempotency_key("order_line_item", "li_1", "line_item.status_changed", "a->b")
        second = make_idempotency_key("order_line_item", "li_1", "line_item.status_changed", "b->c")

        assert first != second
