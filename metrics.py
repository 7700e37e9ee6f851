"""
metrics.py - Application metrics for monitoring
"""
from prometheus_client import Counter, Histogram, generate_latest
from functools import wraps
import time

request_count = Counter(
    'docsearch_requests_total',
    'Total requests',
    ['method', 'endpoint', 'status']
)

request_duration = Histogram(
    'docsearch_request_duration_seconds',
    'Request duration',
    ['method', 'endpoint']
)

search_hits = Histogram(
    'docsearch_search_hits',
    'Hits returned per search page',
    ['mode'],  # 'occurrence' or 'ranked'
    buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500)
)

replacements_applied = Counter(
    'docsearch_replacements_applied_total',
    'Individual range replacements written to document texts'
)

replace_failures = Counter(
    'docsearch_replace_failures_total',
    'Rejected replace requests',
    ['reason']
)

uploads = Counter(
    'docsearch_uploads_total',
    'Uploaded files',
    ['kind']  # 'text', 'pdf' or 'binary'
)

cache_hits = Counter(
    'docsearch_text_cache_hits_total',
    'Document text cache hit count'
)

cache_misses = Counter(
    'docsearch_text_cache_misses_total',
    'Document text cache miss count'
)


def track_request(method: str, endpoint: str):
    """Decorator to track request metrics"""
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start = time.time()
            status = 200
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                status = getattr(e, "status_code", 500)
                raise
            finally:
                duration = time.time() - start
                request_count.labels(method, endpoint, status).inc()
                request_duration.labels(method, endpoint).observe(duration)
        return wrapper
    return decorator


def get_metrics():
    """Get Prometheus metrics"""
    return generate_latest()
