# /mya_recovery/utils/metrics.py

from prometheus_client import Counter, Histogram

# Prometheus metrics for the recovery service, defined in one place so the
# routes, jobs and services share the same collectors.

# Pipeline Metrics
cart_sessions_counter = Counter('cart_sessions_total', 'Cart session tracking events', ['action'])
schedules_processed_counter = Counter('recovery_schedules_processed_total', 'Recovery schedules processed', ['kind', 'status'])
recovery_messages_counter = Counter('recovery_messages_total', 'Recovery messages dispatched', ['method', 'status'])
stuck_schedules_counter = Counter('recovery_schedules_requeued_total', 'Stuck schedules returned to pending or failed', ['outcome'])
database_operations_counter = Counter('database_operations_total', 'Database operations', ['operation', 'status'])

# Security Metrics
api_auth_counter = Counter('api_auth_attempts_total', 'External API authentication attempts', ['status', 'method'])

# Performance Metrics
response_time_histogram = Histogram('response_time_seconds', 'Response time in seconds', ['endpoint'])
gateway_latency_histogram = Histogram('whatsapp_gateway_latency_seconds', 'WhatsApp gateway call latency in seconds')
