"""
Prometheus metrics for monitoring indexing and search.
"""
from prometheus_client import Counter, Histogram

# Request metrics
place_requests_total = Counter(
    'place_requests_total',
    'Total number of place indexing requests',
    ['operation', 'status']
)

search_requests_total = Counter(
    'search_requests_total',
    'Total number of search requests',
    ['endpoint', 'status']
)

# Latency metrics
request_duration_seconds = Histogram(
    'request_duration_seconds',
    'Request latency in seconds',
    ['endpoint']
)

# Search behaviour
search_result_count = Histogram(
    'search_result_count',
    'Number of entities returned per search',
    ['endpoint'],
    buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500, 1000)
)

search_final_resolution = Histogram(
    'search_final_resolution',
    'Geocell resolution at which proximity searches stopped',
    buckets=tuple(range(0, 14))
)

# Redis metrics
redis_operations_total = Counter(
    'redis_operations_total',
    'Total Redis operations',
    ['operation', 'status']
)
