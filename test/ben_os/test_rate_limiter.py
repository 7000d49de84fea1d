"""
Tests for the fixed-window rate limiter and request identity selection.
"""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.rate_limiter import RateLimiter, get_rate_limit_identifier


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRateLimiter:

    def setup_method(self):
        self.clock = FakeClock()
        self.limiter = RateLimiter(max_requests=3, window_seconds=60, clock=self.clock)

    def test_allows_up_to_limit(self):
        results = [self.limiter.check("client") for _ in range(3)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

    def test_rejects_over_limit(self):
        for _ in range(3):
            self.limiter.check("client")
        result = self.limiter.check("client")
        assert result.allowed is False
        assert result.remaining == 0
        assert result.reset_at == 1060.0

    def test_window_resets(self):
        for _ in range(4):
            self.limiter.check("client")
        self.clock.now += 60
        result = self.limiter.check("client")
        assert result.allowed is True
        assert result.remaining == 2
        assert result.reset_at == 1120.0

    def test_identifiers_are_independent(self):
        for _ in range(3):
            self.limiter.check("a")
        assert self.limiter.check("b").allowed is True
        assert self.limiter.check("a").allowed is False

    def test_headers(self):
        self.clock.now = 1000.4
        result = self.limiter.check("client")
        assert RateLimiter.headers(result) == {
            "X-RateLimit-Limit": "3",
            "X-RateLimit-Remaining": "2",
            "X-RateLimit-Reset": "1061",
        }

    def test_reset_and_sweep(self):
        self.limiter.check("a")
        self.limiter.check("b")
        self.limiter.reset("a")
        assert len(self.limiter) == 1

        self.clock.now += 61
        assert self.limiter.sweep_expired() == 1
        assert len(self.limiter) == 0

        self.limiter.check("c")
        self.limiter.reset_all()
        assert len(self.limiter) == 0


class TestRateLimitIdentifier:

    @pytest.mark.parametrize("headers,expected", [
        ({"authorization": "Bearer bos_key", "x-agent-id": "agent"}, "bos_key"),
        ({"authorization": "Basic abc", "x-agent-id": "agent"}, "agent"),
        ({"x-forwarded-for": "10.0.0.1, 10.0.0.2", "x-real-ip": "10.0.0.9"}, "10.0.0.1"),
        ({"x-real-ip": "10.0.0.9"}, "10.0.0.9"),
        ({"authorization": "Bearer   "}, "anonymous"),
        ({}, "anonymous"),
    ])
    def test_identifier_precedence(self, headers, expected):
        assert get_rate_limit_identifier(headers) == expected
