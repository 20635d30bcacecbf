"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge

# Charge metrics
charge_attempts_counter = Counter(
    'renewals_charge_attempts_total',
    'Total number of renewal charge attempts',
    ['gateway', 'outcome']
)

retries_scheduled_counter = Counter(
    'renewals_retries_scheduled_total',
    'Total number of payment retries scheduled',
    ['attempt']
)

suspensions_counter = Counter(
    'renewals_suspensions_total',
    'Total number of subscriptions suspended after payment failure',
    ['reason']
)

# Lifecycle metrics
transitions_counter = Counter(
    'renewals_status_transitions_total',
    'Total number of subscription status transitions',
    ['to_status']
)

grace_periods_counter = Counter(
    'renewals_grace_periods_total',
    'Grace period starts and ends',
    ['event']
)

# Webhook metrics
webhook_events_counter = Counter(
    'renewals_webhook_events_total',
    'Total number of inbound gateway webhook events',
    ['gateway', 'result']
)

# Scheduler metrics
scheduler_runs_counter = Counter(
    'renewals_scheduler_runs_total',
    'Total number of scheduler job runs',
    ['job', 'status']
)

scheduler_subscriptions_processed_counter = Counter(
    'renewals_scheduler_subscriptions_processed_total',
    'Total number of due subscriptions processed by the scheduler'
)

pending_retries_gauge = Gauge(
    'renewals_pending_retries',
    'Number of pending payment retries seen by the last retry run'
)
