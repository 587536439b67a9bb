"""
Monitoring and metrics collection for the application.
Provides Prometheus-compatible metrics and performance tracking.
"""
import logging
import time
from collections import defaultdict
from typing import Callable

from fastapi import Request, Response
from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

REQUEST_COUNT = Counter(
    'session_engine_requests_total',
    'Total number of requests',
    ['method', 'endpoint', 'status']
)

REQUEST_DURATION = Histogram(
    'session_engine_request_duration_seconds',
    'Request duration in seconds',
    ['method', 'endpoint']
)

ACTIVE_REQUESTS = Gauge(
    'session_engine_active_requests',
    'Number of requests currently being processed'
)

SCHEDULE_GENERATION_COUNT = Counter(
    'session_generation_total',
    'Schedule session generation runs',
    ['mode', 'status']  # mode: preview|create|regenerate, status: ready|blocked|invalid
)

SCHEDULE_GENERATION_DURATION = Histogram(
    'session_generation_duration_seconds',
    'Time spent running the generation pipeline',
    ['mode']
)

CONFLICTS_FOUND = Counter(
    'session_conflicts_found_total',
    'Conflicts detected against persisted sessions',
    ['resource_type']
)

SESSIONS_RESCHEDULED = Counter(
    'session_holiday_rescheduled_total',
    'Sessions moved off public holidays',
    ['strategy']  # same_weekday|fallback
)

HOLIDAY_FETCH_COUNT = Counter(
    'holiday_fetch_total',
    'Holiday provider requests per year',
    ['source', 'status']  # source: json|ics|cache, status: ok|empty|error
)

HOLIDAY_FETCH_DURATION = Histogram(
    'holiday_fetch_duration_seconds',
    'Holiday provider request duration',
    ['source']
)

SWEEP_RUNS = Counter(
    'background_sweep_runs_total',
    'Background sweep executions',
    ['task', 'status']
)


class MetricsCollector:
    def __init__(self):
        self.endpoint_stats = defaultdict(lambda: {
            'count': 0,
            'total_duration': 0.0,
            'min_duration': float('inf'),
            'max_duration': 0.0,
            'errors': 0
        })
        self.slow_requests = []
        self.max_slow_requests = 10

    def record_request(self, method: str, path: str, duration: float, status: int):
        stats = self.endpoint_stats[f"{method} {path}"]
        stats['count'] += 1
        stats['total_duration'] += duration
        stats['min_duration'] = min(stats['min_duration'], duration)
        stats['max_duration'] = max(stats['max_duration'], duration)
        if status >= 400:
            stats['errors'] += 1

        # Preview/create can block on the holiday provider, keep the slowest ones around
        if duration > 1.0:
            self.slow_requests.append({
                'method': method,
                'path': path,
                'duration': duration,
                'status': status,
                'timestamp': time.time()
            })
            if len(self.slow_requests) > self.max_slow_requests:
                self.slow_requests.pop(0)

    def get_stats(self):
        result = {}
        for endpoint, stats in self.endpoint_stats.items():
            count = stats['count']
            result[endpoint] = {
                'count': count,
                'avg_duration_ms': round(stats['total_duration'] / count * 1000, 2) if count else 0,
                'min_duration_ms': round(stats['min_duration'] * 1000, 2) if stats['min_duration'] != float('inf') else 0,
                'max_duration_ms': round(stats['max_duration'] * 1000, 2),
                'errors': stats['errors'],
                'error_rate': round(stats['errors'] / count * 100, 2) if count else 0
            }
        return result

    def get_slow_requests(self):
        return sorted(self.slow_requests, key=lambda x: x['duration'], reverse=True)


metrics_collector = MetricsCollector()


class MetricsMiddleware(BaseHTTPMiddleware):
    """Middleware to collect request metrics."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        ACTIVE_REQUESTS.inc()
        start_time = time.time()
        try:
            response = await call_next(request)
            duration = time.time() - start_time
            REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path, status=response.status_code).inc()
            REQUEST_DURATION.labels(method=request.method, endpoint=request.url.path).observe(duration)
            metrics_collector.record_request(request.method, request.url.path, duration, response.status_code)
            if duration > 1.0:
                logger.warning(
                    "Slow request: %s %s took %.2fs (status=%s)",
                    request.method,
                    request.url.path,
                    duration,
                    response.status_code
                )
            return response
        except Exception:
            REQUEST_COUNT.labels(method=request.method, endpoint=request.url.path, status=500).inc()
            metrics_collector.record_request(request.method, request.url.path, time.time() - start_time, 500)
            raise
        finally:
            ACTIVE_REQUESTS.dec()


def record_conflicts(report) -> None:
    for resource_type, records in report.by_type().items():
        if records:
            CONFLICTS_FOUND.labels(resource_type=resource_type).inc(len(records))


def get_metrics():
    """Get Prometheus metrics in text format."""
    return generate_latest()


def get_dashboard_stats():
    """Get dashboard-friendly statistics."""
    stats = metrics_collector.get_stats()
    total_requests = sum(s['count'] for s in stats.values())
    return {
        'endpoints': stats,
        'slow_requests': metrics_collector.get_slow_requests(),
        'summary': {
            'total_requests': total_requests,
            'total_errors': sum(s['errors'] for s in stats.values()),
            'avg_response_time_ms': round(
                sum(s['avg_duration_ms'] * s['count'] for s in stats.values()) / total_requests if total_requests else 0,
                2
            )
        }
    }
