from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency in seconds",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "Total HTTP requests that ended in a server error",
    ["method", "path", "status"],
)

RENEWALS = Counter(
    "billing_renewals_total",
    "Automatic renewal attempts by outcome",
    ["outcome"],
)
PAYMENT_RETRIES = Counter(
    "billing_payment_retries_total",
    "Dunning retry attempts by outcome",
    ["outcome"],
)
WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Processor webhook deliveries by outcome",
    ["processor", "outcome"],
)
PROCESSOR_LATENCY = Histogram(
    "billing_processor_request_duration_seconds",
    "Payment processor API latency in seconds",
    ["processor", "operation"],
)
