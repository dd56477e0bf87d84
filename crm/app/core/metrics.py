"""
Pipeline CRM Prometheus metrics
"""

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code']
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint']
)

FORECAST_CALCULATIONS = Counter(
    'forecast_calculations_total',
    'Forecast recalculations by kind',
    ['kind']
)

RETENTION_RECORDS_AFFECTED = Counter(
    'retention_records_affected_total',
    'Records deleted, archived or anonymized by retention policies',
    ['entity_type', 'action']
)
