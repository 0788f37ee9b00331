from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)
REQUEST_ERRORS = Counter(
    "http_request_errors_total",
    "HTTP 5xx responses",
    ["method", "path", "status"],
)

WEBHOOKS_RECEIVED = Counter(
    "billing_webhooks_total",
    "Inbound payment webhooks by outcome",
    ["provider", "outcome"],
)
PAYMENTS_RECORDED = Counter(
    "billing_payments_recorded_total",
    "Payment rows written by the recorder",
    ["provider", "status"],
)
SWEEP_RUNS = Counter(
    "billing_entitlement_sweeps_total",
    "Completed entitlement sweeps",
)
SWEEP_MUTATIONS = Counter(
    "billing_entitlement_sweep_mutations_total",
    "Rows changed by the entitlement sweep",
    ["counter"],
)
