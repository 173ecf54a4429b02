"""
Domain constants used across services/routers.
"""

# Order codes: ORD-YYYYMMDD-HHMMSS-NNNN
ORDER_CODE_PREFIX = "ORD"
ORDER_CODE_MAX_ATTEMPTS = 5

# All gateway amounts are whole VND
CURRENCY = "VND"

# Percentage at which an enrollment counts as completed
COMPLETION_THRESHOLD = 100

# Free-text reasons written to transaction error_message
REASON_CANCELLED_BY_USER = "Order cancelled by user"
REASON_SUPERSEDED = "Superseded by a newer payment attempt"
REASON_EXPIRED = "Payment session expired"
REASON_ORDER_EXPIRED = "Pending order expired before payment"
