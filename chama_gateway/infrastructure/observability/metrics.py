"""Prometheus metrics for loan lifecycle, M-Pesa traffic, webhook reconciliation and audit health"""

from prometheus_client import Counter, Histogram

# Loan lifecycle metrics
loan_transition_counter = Counter(
    "chama_loan_transitions_total",
    "Loan lifecycle operations applied",
    ["action"],  # apply | approve | reject | disburse | restructure | repayment | paid | default
)

eligibility_rejection_counter = Counter(
    "chama_loan_eligibility_rejections_total",
    "Loan applications rejected for exceeding the contribution ceiling",
)

duplicate_payment_counter = Counter(
    "chama_duplicate_payments_total",
    "Repayments rejected because their external reference was already used",
)

# M-Pesa rail metrics
gateway_latency_histogram = Histogram(
    "mpesa_request_latency_seconds",
    "M-Pesa API response time",
    ["operation"],  # token | stk_push | stk_query | b2c
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)

gateway_failure_counter = Counter(
    "mpesa_request_failures_total",
    "Failed M-Pesa API calls",
    ["operation"],
)

# Webhook reconciliation metrics
callback_counter = Counter(
    "mpesa_callbacks_total",
    "Inbound M-Pesa webhooks by outcome",
    ["channel", "outcome"],  # outcome: applied | duplicate | unknown | failed | malformed | error
)

# Side channels that must never block a business operation
audit_failure_counter = Counter(
    "chama_audit_write_failures_total",
    "Audit log entries that could not be written",
)

notification_failure_counter = Counter(
    "chama_notification_failures_total",
    "Notification events dropped after all retries",
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_loan_transition(action: str) -> None:
    loan_transition_counter.labels(action=action).inc()


def record_callback(channel: str, outcome: str) -> None:
    callback_counter.labels(channel=channel, outcome=outcome).inc()
