"""Centralized billing constants: single source of truth for hardcoded values."""

# --- Subscription status ---
SUBSCRIPTION_ACTIVE = "ACTIVE"
SUBSCRIPTION_CANCELLED = "CANCELLED"
SUBSCRIPTION_EXPIRED = "EXPIRED"

# --- Recurring status ---
RECURRING_ACTIVE = "ACTIVE"
RECURRING_PENDING_PAYMENT = "PENDING_PAYMENT"
RECURRING_CANCELLED = "CANCELLED"

# --- Retry policy ---
MAX_FAILED_ATTEMPTS = 3
GRACE_PERIOD_DAYS = 3

# --- Payment ---
PAYMENT_PAID = "PAID"
PAYMENT_WAIVED = "WAIVED"
PAYMENT_FAILED = "FAILED"
PAYMENT_TYPE_RECURRING = "RECURRING"
WAIVED_KEY_PREFIX = "WAIVED_"
ORDER_ID_PREFIX = "AUTO"
DEFAULT_PAYMENT_METHOD = "CARD"

# --- Billing history ---
HISTORY_SUCCESS = "SUCCESS"
HISTORY_FAILED = "FAILED"

# --- Gateway ---
GATEWAY_STATUS_DONE = "DONE"
WEBHOOK_PAYMENT_DONE = "PAYMENT_DONE"
WEBHOOK_PAYMENT_FAILED = "PAYMENT_FAILED"
WEBHOOK_BILLING_KEY_ISSUED = "BILLING_KEY_ISSUED"
WEBHOOK_BILLING_KEY_REMOVED = "BILLING_KEY_REMOVED"
WEBHOOK_SIGNATURE_HEADER = "TossPayments-Signature"

# --- Notifications ---
NOTIFY_PAYMENT_SUCCEEDED = "PAYMENT_SUCCEEDED"
NOTIFY_PAYMENT_FAILED = "PAYMENT_FAILED"
NOTIFY_SUBSCRIPTION_CANCELLED = "SUBSCRIPTION_CANCELLED"
NOTIFICATION_PENDING = "PENDING"
NOTIFICATION_SENT = "SENT"
NOTIFICATION_FAILED = "FAILED"
NOTIFICATION_SENDING = "SENDING"
NOTIFICATION_MAX_ATTEMPTS = 5
NOTIFICATION_BATCH_SIZE = 100
NOTIFICATION_LEASE_SECONDS = 300

# --- Worker ---
ARQ_MAX_JOBS = 10
ARQ_JOB_TIMEOUT = 1800  # seconds (30 min)
