"""
Query timing instrumentation.

Wraps database methods so their execution time lands in the shared
PerformanceMonitor, where slow queries are logged.
"""

import functools
import time
from typing import Callable

from .monitoring import performance_monitor


def timed_query(operation: str) -> Callable:
    """Decorator recording the wall time of a database call under `operation`."""
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - start_time) * 1000
                performance_monitor.record_query_time(operation, duration_ms)
        return wrapper
    return decorator
