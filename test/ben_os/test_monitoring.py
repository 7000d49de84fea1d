"""
Tests for the performance monitor, background maintenance workers and
environment-driven settings.
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ben_os.config import Settings, load_settings
from ben_os.monitoring import BackgroundTasks, PerformanceMonitor
from ben_os.performance import timed_query
from ben_os.rate_limiter import RateLimiter


class TestPerformanceMonitor:

    def setup_method(self):
        self.monitor = PerformanceMonitor()

    def test_averages(self):
        assert self.monitor.get_average_query_time() == 0.0
        self.monitor.record_query_time("a", 10)
        self.monitor.record_query_time("b", 30)
        assert self.monitor.get_average_query_time() == 20
        self.monitor.record_broadcast_time(4, 8)
        assert self.monitor.get_average_broadcast_time() == 2

    def test_daily_stats(self):
        self.monitor.increment_daily_stat("activity_logged")
        self.monitor.increment_daily_stat("activity_logged", 2)
        assert self.monitor.daily_stats["activity_logged"] == 3

    def test_system_metrics(self, workspace):
        workspace["db"].create_task(workspace["board"]["id"], "One")
        manager = MagicMock()
        manager.get_connection_count.return_value = 2
        self.monitor.increment_daily_stat("rate_limited")

        metrics = self.monitor.get_system_metrics(manager, workspace["db"]).to_dict()
        assert metrics["active_connections"] == 2
        assert metrics["total_tasks"] == 1
        assert metrics["rate_limited_requests_today"] == 1
        assert metrics["last_maintenance"] == "never"

    def test_system_metrics_survives_database_errors(self):
        database = MagicMock()
        database.get_task_stats.side_effect = RuntimeError("closed")
        metrics = self.monitor.get_system_metrics(None, database)
        assert metrics.total_tasks == 0
        assert metrics.active_connections == 0


class TestTimedQuery:

    def test_records_duration(self):
        monitor = PerformanceMonitor()

        @timed_query("sample")
        def sample():
            return 42

        with patch('ben_os.performance.performance_monitor', monitor):
            assert sample() == 42
        assert [m.operation for m in monitor.query_times] == ["sample"]


class TestBackgroundTasks:

    @pytest.mark.asyncio
    async def test_start_and_stop(self, temp_db):
        tasks = BackgroundTasks()
        limiter = RateLimiter(5, 60)
        await tasks.start_background_tasks(temp_db, limiter, retention_days=30)
        assert len(tasks.tasks) == 3

        await asyncio.sleep(0.05)
        await tasks.stop_background_tasks()
        assert tasks.tasks == []

    @pytest.mark.asyncio
    async def test_sweep_worker_removes_expired_windows(self):
        now = [1000.0]
        limiter = RateLimiter(5, 60, clock=lambda: now[0])
        limiter.check("client")
        now[0] += 120

        tasks = BackgroundTasks()
        worker = asyncio.create_task(tasks._rate_limit_sweep_worker(limiter))
        await asyncio.sleep(0.01)
        tasks.shutdown_event.set()
        await asyncio.wait_for(worker, timeout=1)
        assert len(limiter) == 0

    @pytest.mark.asyncio
    async def test_wait_or_shutdown(self):
        tasks = BackgroundTasks()
        assert await tasks._wait_or_shutdown(0.01) is False
        tasks.shutdown_event.set()
        assert await tasks._wait_or_shutdown(5) is True


class TestSettings:

    def test_defaults(self):
        settings = load_settings({})
        assert settings == Settings()
        assert settings.rate_limit == 100
        assert settings.require_auth is False

    def test_environment_overrides(self):
        settings = load_settings({
            "DATABASE_PATH": "/tmp/x.db",
            "BEN_OS_REQUIRE_AUTH": "yes",
            "BEN_OS_RATE_LIMIT": "10",
            "BEN_OS_RATE_LIMIT_WINDOW": "bogus",
            "BEN_OS_CORS_ORIGINS": "http://a, http://b",
            "BEN_OS_LOG_LEVEL": "debug",
        })
        assert settings.database_path == "/tmp/x.db"
        assert settings.require_auth is True
        assert settings.rate_limit == 10
        assert settings.rate_limit_window == 60
        assert settings.cors_origins == ["http://a", "http://b"]
        assert settings.log_level == "DEBUG"
