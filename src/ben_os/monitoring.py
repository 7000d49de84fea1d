"""
Performance Monitoring and Background Tasks

Provides query timing, process metrics and the background maintenance
workers for Ben OS: rate-limit window sweeping, activity-log retention
cleanup and memory tracking.
"""

import asyncio
import psutil
import time
import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, asdict
from collections import defaultdict, deque

from .activity import ActivityLogger

# Performance monitoring configuration
METRICS_HISTORY_SIZE = 1000  # Keep last 1000 data points for trending
RATE_LIMIT_SWEEP_INTERVAL = 60  # seconds
ACTIVITY_CLEANUP_INTERVAL = 86400  # once a day
MEMORY_MONITORING_INTERVAL = 60  # 1 minute for memory tracking
SLOW_QUERY_THRESHOLD_MS = 50

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetric:
    """Single performance measurement with timestamp."""
    timestamp: datetime
    value: float
    operation: str


@dataclass
class SystemMetrics:
    """Current system performance metrics."""
    active_connections: int
    total_tasks: int
    completed_tasks_today: int
    avg_query_time_ms: float
    avg_broadcast_time_ms: float
    activity_logs_written_today: int
    activity_log_failures_today: int
    rate_limited_requests_today: int
    activity_logs_cleaned: int
    memory_usage_mb: float
    cpu_usage_percent: float
    last_maintenance: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PerformanceMonitor:
    """
    Collects query timings, broadcast timings and daily counters.

    Counters reset when the UTC date changes.
    """

    def __init__(self):
        self.query_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.broadcast_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.daily_stats = defaultdict(int)
        self.last_maintenance_time: Optional[datetime] = None
        self.start_time = datetime.now(timezone.utc)
        self._last_reset_date = datetime.now(timezone.utc).date()

    def record_query_time(self, operation: str, duration_ms: float):
        """
        Record database query execution time.

        Args:
            operation: Description of the database operation
            duration_ms: Query execution time in milliseconds
        """
        self.query_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=duration_ms,
            operation=operation
        ))
        if duration_ms > SLOW_QUERY_THRESHOLD_MS:
            logger.warning(f"Slow query detected: {operation} took {duration_ms:.2f}ms")

    def record_broadcast_time(self, connection_count: int, duration_ms: float):
        """Record WebSocket broadcast duration normalised per connection."""
        per_connection_ms = duration_ms / max(connection_count, 1)
        self.broadcast_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=per_connection_ms,
            operation=f"broadcast_to_{connection_count}_connections"
        ))
        if per_connection_ms > 20:
            logger.warning(f"Slow broadcast: {per_connection_ms:.2f}ms per connection")

    def increment_daily_stat(self, stat_name: str, amount: int = 1):
        self._check_daily_reset()
        self.daily_stats[stat_name] += amount

    def _check_daily_reset(self):
        current_date = datetime.now(timezone.utc).date()
        if current_date != self._last_reset_date:
            logger.info("Resetting daily statistics for new day")
            self.daily_stats.clear()
            self._last_reset_date = current_date

    def get_average_query_time(self) -> float:
        if not self.query_times:
            return 0.0
        return sum(m.value for m in self.query_times) / len(self.query_times)

    def get_average_broadcast_time(self) -> float:
        if not self.broadcast_times:
            return 0.0
        return sum(m.value for m in self.broadcast_times) / len(self.broadcast_times)

    def get_memory_usage_mb(self) -> float:
        """Get current process memory usage in MB."""
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except Exception as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return 0.0

    def get_cpu_usage_percent(self) -> float:
        try:
            return psutil.cpu_percent(interval=0.1)
        except Exception as e:
            logger.warning(f"Failed to get CPU usage: {e}")
            return 0.0

    def update_maintenance_time(self):
        self.last_maintenance_time = datetime.now(timezone.utc)

    def get_system_metrics(self, connection_manager, database) -> SystemMetrics:
        """
        Collect current system performance metrics.

        Args:
            connection_manager: WebSocket connection manager instance
            database: BenOSDatabase instance

        Returns:
            SystemMetrics: Current system performance data
        """
        self._check_daily_reset()
        try:
            task_stats = database.get_task_stats()
            total_tasks = task_stats["total"]
            completed_today = task_stats["completed_today"]
        except Exception as e:
            logger.error(f"Failed to collect task statistics: {e}")
            total_tasks = 0
            completed_today = 0

        return SystemMetrics(
            active_connections=connection_manager.get_connection_count() if connection_manager else 0,
            total_tasks=total_tasks,
            completed_tasks_today=completed_today,
            avg_query_time_ms=self.get_average_query_time(),
            avg_broadcast_time_ms=self.get_average_broadcast_time(),
            activity_logs_written_today=self.daily_stats.get('activity_logged', 0),
            activity_log_failures_today=self.daily_stats.get('activity_failed', 0),
            rate_limited_requests_today=self.daily_stats.get('rate_limited', 0),
            activity_logs_cleaned=self.daily_stats.get('activity_cleaned', 0),
            memory_usage_mb=self.get_memory_usage_mb(),
            cpu_usage_percent=self.get_cpu_usage_percent(),
            last_maintenance=(
                self.last_maintenance_time.isoformat()
                if self.last_maintenance_time else "never"
            )
        )


# Global performance monitor instance
performance_monitor = PerformanceMonitor()


class BackgroundTasks:
    """
    Periodic maintenance running alongside the FastAPI application.
    """

    def __init__(self):
        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()

    async def start_background_tasks(self, database, rate_limiter=None,
                                     retention_days: int = 90):
        """
        Start all background maintenance tasks.

        Args:
            database: BenOSDatabase instance for cleanup operations
            rate_limiter: RateLimiter whose expired windows get swept
            retention_days: Activity log retention for the daily cleanup
        """
        logger.info("Starting background tasks...")
        self.shutdown_event = asyncio.Event()

        if rate_limiter is not None:
            self.tasks.append(asyncio.create_task(self._rate_limit_sweep_worker(rate_limiter)))
        self.tasks.append(asyncio.create_task(
            self._activity_cleanup_worker(database, retention_days)
        ))
        self.tasks.append(asyncio.create_task(self._memory_monitoring_worker()))

        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop_background_tasks(self):
        """Stop all background tasks gracefully."""
        logger.info("Stopping background tasks...")
        self.shutdown_event.set()

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.tasks, return_exceptions=True),
                    timeout=10.0
                )
                logger.info("All background tasks stopped")
            except asyncio.TimeoutError:
                logger.warning("Background task shutdown timeout")
        self.tasks = []

    async def _wait_or_shutdown(self, interval: float) -> bool:
        """Sleep for `interval` seconds; True when shutdown was requested."""
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
            return True
        except asyncio.TimeoutError:
            return False

    async def _rate_limit_sweep_worker(self, rate_limiter):
        """Drop expired rate-limit windows so the store does not grow unbounded."""
        logger.info("Rate limit sweep worker started")

        while not self.shutdown_event.is_set():
            try:
                removed = rate_limiter.sweep_expired()
                if removed:
                    logger.debug(f"Swept {removed} expired rate limit entries")
            except Exception as e:
                logger.error(f"Rate limit sweep worker error: {e}")

            if await self._wait_or_shutdown(RATE_LIMIT_SWEEP_INTERVAL):
                break

    async def _activity_cleanup_worker(self, database, retention_days: int):
        """Delete activity logs older than the retention window once a day."""
        logger.info("Activity cleanup worker started")
        activity_logger = ActivityLogger(database)

        while not self.shutdown_event.is_set():
            try:
                start_time = time.time()
                result = activity_logger.run_retention_cleanup(retention_days)
                if result.get("success") and result.get("deleted_count"):
                    logger.info(f"Cleaned up {result['deleted_count']} activity logs")
                    performance_monitor.increment_daily_stat('activity_cleaned', result['deleted_count'])
                performance_monitor.update_maintenance_time()
                performance_monitor.record_query_time(
                    'activity_cleanup', (time.time() - start_time) * 1000
                )
            except Exception as e:
                logger.error(f"Activity cleanup worker error: {e}")

            if await self._wait_or_shutdown(ACTIVITY_CLEANUP_INTERVAL):
                break

    async def _memory_monitoring_worker(self):
        """Track memory trends and warn on sustained growth."""
        logger.info("Memory monitoring worker started")
        memory_history = deque(maxlen=60)

        while not self.shutdown_event.is_set():
            try:
                current_memory = performance_monitor.get_memory_usage_mb()
                memory_history.append(current_memory)

                if len(memory_history) >= 30:
                    avg_recent = sum(list(memory_history)[-10:]) / 10
                    avg_older = sum(list(memory_history)[-30:-10]) / 20
                    if avg_older > 0:
                        growth_rate = (avg_recent - avg_older) / avg_older * 100
                        if growth_rate > 20:
                            logger.warning(
                                f"Potential memory leak detected: {growth_rate:.1f}% growth "
                                f"(current: {current_memory:.1f}MB)"
                            )

                if len(memory_history) % 15 == 0:
                    logger.info(f"Memory usage: {current_memory:.1f}MB")

            except Exception as e:
                logger.error(f"Memory monitoring worker error: {e}")

            if await self._wait_or_shutdown(MEMORY_MONITORING_INTERVAL):
                break


# Global background task manager
background_tasks = BackgroundTasks()
