# vspilot/core/performance_monitor.py
import asyncio
import logging
import threading
import time
from collections import defaultdict
from functools import wraps
from typing import Any, Callable

logger = logging.getLogger(__name__)

class PerformanceMonitor:
    """
    A singleton that aggregates execution-time metrics for decorated functions.

    Metrics per name: call count, failures, total time, average time, max time.
    It is thread-safe, since timed functions run on the scheduler worker,
    the analysis worker and caller threads.
    """
    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        with cls._lock:
            if cls._instance is None:
                cls._instance = super(PerformanceMonitor, cls).__new__(cls)
                cls._instance.metrics = defaultdict(lambda: {'calls': 0, 'failures': 0, 'total_time': 0.0, 'max_time': 0.0})
                cls._instance.enabled = True
            return cls._instance

    def record(self, name: str, duration: float, failed: bool = False):
        """Records a single call."""
        if not self.enabled:
            return
        with self._lock:
            metric = self.metrics[name]
            metric['calls'] += 1
            metric['total_time'] += duration
            if failed:
                metric['failures'] += 1
            if duration > metric['max_time']:
                metric['max_time'] = duration

    def get_report(self) -> str:
        """Formats all recorded metrics, slowest (by total time) first."""
        with self._lock:
            snapshot = {name: dict(data) for name, data in self.metrics.items()}
        if not snapshot:
            return "No performance metrics recorded."

        report_lines = ["--- Performance Report ---"]
        for name, data in sorted(snapshot.items(), key=lambda item: item[1]['total_time'], reverse=True):
            calls = data['calls']
            avg_time = data['total_time'] / calls if calls > 0 else 0
            report_lines.append(
                f"- {name:<40} "
                f"Calls={calls:<5} | "
                f"Failed={data['failures']:<4} | "
                f"Total={data['total_time']:<8.4f}s | "
                f"Avg={avg_time:<8.4f}s | "
                f"Max={data['max_time']:<8.4f}s"
            )
        return "\n".join(report_lines)

    def log_report(self):
        logger.info(self.get_report())

    def reset(self):
        """Clears all recorded metrics."""
        with self._lock:
            self.metrics.clear()

# Singleton instance for global access
performance_monitor = PerformanceMonitor()

def _metric_name(func: Callable, args: tuple) -> str:
    # Methods are reported as Class.method.
    if args and hasattr(args[0], func.__name__):
        return f"{args[0].__class__.__name__}.{func.__name__}"
    return func.__name__

def time_function(func: Callable) -> Callable:
    """
    Decorator that times a function (sync or async) and records the result in
    the performance monitor. A call that raises is recorded as a failure and
    the exception propagates unchanged.
    """
    if asyncio.iscoroutinefunction(func):
        @wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
            start_time = time.monotonic()
            failed = True
            try:
                result = await func(*args, **kwargs)
                failed = False
                return result
            finally:
                performance_monitor.record(_metric_name(func, args), time.monotonic() - start_time, failed=failed)
        return async_wrapper

    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        start_time = time.monotonic()
        failed = True
        try:
            result = func(*args, **kwargs)
            failed = False
            return result
        finally:
            performance_monitor.record(_metric_name(func, args), time.monotonic() - start_time, failed=failed)
    return wrapper
