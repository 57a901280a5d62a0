"""Unit tests for retry backoff schedules."""

from types import SimpleNamespace

import pytest

from timetide.core.webhook_delivery import WebhookDeliveryEngine
from timetide.core.worker_pool import WorkerPool


def _pool(**config):
    return WorkerPool(SimpleNamespace(), config, worker_id='backoff-test')


class TestWorkerBackoff:
    def test_doubles_per_attempt_without_jitter(self):
        pool = _pool(backoff_base_seconds=5, backoff_max_seconds=3600, backoff_jitter_ratio=0)

        assert [pool.compute_backoff(n) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]

    def test_capped_at_maximum(self):
        pool = _pool(backoff_base_seconds=5, backoff_max_seconds=30, backoff_jitter_ratio=0)

        assert pool.compute_backoff(10) == 30

    def test_never_shorter_than_retry_after(self):
        pool = _pool(backoff_base_seconds=5, backoff_jitter_ratio=0)

        assert pool.compute_backoff(1, retry_after=90) == 90
        assert pool.compute_backoff(1, retry_after=1) == 5

    def test_jitter_stays_within_ratio(self):
        pool = _pool(backoff_base_seconds=10, backoff_jitter_ratio=0.2)

        for _ in range(50):
            assert 8 <= pool.compute_backoff(1) <= 12

    def test_concurrency_is_at_least_one(self):
        assert _pool(concurrency=0).concurrency == 1


class TestWebhookBackoff:
    @pytest.mark.parametrize("attempts,expected", [(1, 10), (2, 20), (3, 40), (4, 80)])
    def test_exponential_schedule(self, attempts, expected):
        engine = WebhookDeliveryEngine(SimpleNamespace(), SimpleNamespace(), {'backoff_base_seconds': 10})

        assert engine.compute_backoff(attempts) == expected

    def test_capped(self):
        engine = WebhookDeliveryEngine(SimpleNamespace(), SimpleNamespace(),
                                       {'backoff_base_seconds': 10, 'backoff_max_seconds': 60})

        assert engine.compute_backoff(8) == 60
