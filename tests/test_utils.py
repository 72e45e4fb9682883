"""Tests for signature, record and rate limiting helpers."""

import pytest

from shopify_sync.utils.crypto import compute_hmac, verify_hmac
from shopify_sync.utils.rate_limiter import RateLimiter, ThrottleBucket
from shopify_sync.utils.records import (
    extract_gid_id,
    flatten_record,
    get_nested_value,
    set_nested_value,
)


class TestHmac:
    """Test webhook signature verification."""

    def test_valid_signature(self):
        body = b'{"id": 1}'
        assert verify_hmac(body, compute_hmac(body, "secret"), "secret") is True

    def test_str_body_is_encoded(self):
        body = '{"title": "café"}'
        signature = compute_hmac(body.encode("utf-8"), "secret")
        assert verify_hmac(body, signature, "secret") is True

    def test_tampered_body_or_wrong_secret(self):
        signature = compute_hmac(b'{"id": 1}', "secret")
        assert verify_hmac(b'{"id": 2}', signature, "secret") is False
        assert verify_hmac(b'{"id": 1}', signature, "other") is False

    def test_missing_header(self):
        assert verify_hmac(b"{}", None, "secret") is False
        assert verify_hmac(b"{}", "", "secret") is False

    def test_non_ascii_header(self):
        assert verify_hmac(b"{}", "éé", "secret") is False


class TestRecords:
    def test_nested_and_indexed_paths(self):
        record = {"product": {"title": "Shirt"}, "images": [{"url": "a.png"}]}
        assert get_nested_value(record, "product.title") == "Shirt"
        assert get_nested_value(record, "images[0].url") == "a.png"
        assert get_nested_value(record, "images[3].url") is None
        assert get_nested_value(record, "product.missing") is None

    def test_set_nested_value(self):
        data = {}
        set_nested_value(data, "a.b.c", 1)
        assert data == {"a": {"b": {"c": 1}}}

    def test_flatten_record(self):
        assert flatten_record({"a": {"b": 1, "c": {"d": 2}}, "e": [1]}) == {"a.b": 1, "a.c.d": 2, "e": [1]}

    def test_extract_gid_id(self):
        assert extract_gid_id("gid://shopify/Product/123") == "123"
        assert extract_gid_id("plain") is None
        assert extract_gid_id(None) is None


class TestThrottleBucket:
    """Test the client side model of Shopify's leaky bucket."""

    def test_no_wait_under_threshold(self):
        bucket = ThrottleBucket(capacity=1000, restore_rate=50)
        bucket.update_from_cost({"maximumAvailable": 1000, "currentlyAvailable": 500, "restoreRate": 50})
        assert bucket.compute_wait(now=bucket.updated_at) == 0.0

    def test_wait_over_threshold(self):
        bucket = ThrottleBucket(capacity=1000, restore_rate=50, max_wait=10.0)
        bucket.update_from_cost({"maximumAvailable": 1000, "currentlyAvailable": 100, "restoreRate": 50})
        # 900 used, drains to the 500 target at 50/s
        assert bucket.compute_wait(now=bucket.updated_at) == 8.0
        assert bucket.compute_wait(now=bucket.updated_at + 1) == pytest.approx(7.0)
        assert bucket.compute_wait(now=bucket.updated_at + 3) == 0.0

    def test_header_updates(self):
        bucket = ThrottleBucket()
        bucket.update_from_header("40/80")
        assert bucket.used == 40
        assert bucket.capacity == 80
        bucket.update_from_header("garbage")
        assert bucket.used == 40


class TestRateLimiter:
    """Test the Redis sliding window limiter."""

    @pytest.mark.asyncio
    async def test_limit_within_window(self, fake_redis):
        limiter = RateLimiter(fake_redis, prefix="test")
        results = [await limiter.check_rate_limit("jobs", limit=3, window=60) for _ in range(4)]
        assert results == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_reset(self, fake_redis):
        limiter = RateLimiter(fake_redis, prefix="test")
        for _ in range(2):
            await limiter.check_rate_limit("jobs", limit=2, window=60)
        await limiter.reset_rate_limit("jobs")
        assert await limiter.check_rate_limit("jobs", limit=2, window=60) is True
