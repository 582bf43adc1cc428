# Overview: Status vocabularies for orders, payments, fraud alerts and insurance policies.

"""
STATE MACHINES:

    Order:    pending -> assigned -> in_transit -> delivered
              pending/assigned -> cancelled

    Payment:  pending -> held_escrow -> released
                                     -> refunded
              pending -> failed

RULES (NON-NEGOTIABLE):
1. Transitions only move forward; no state is ever re-entered.
2. delivered, cancelled, released, refunded and failed are terminal.
3. Status columns are only written through compare-and-set updates.
"""

# =============================================================================
# ROLES
# =============================================================================

ROLE_CUSTOMER = "customer"
ROLE_DRIVER = "driver"
ROLE_MERCHANT = "merchant"
ROLE_ADMIN = "admin"

VALID_ROLES = {ROLE_CUSTOMER, ROLE_DRIVER, ROLE_MERCHANT, ROLE_ADMIN}


# =============================================================================
# ORDER STATUS
# =============================================================================

ORDER_PENDING = "pending"
ORDER_ASSIGNED = "assigned"
ORDER_IN_TRANSIT = "in_transit"
ORDER_DELIVERED = "delivered"
ORDER_CANCELLED = "cancelled"

CANCELLABLE_ORDER_STATUSES = (ORDER_PENDING, ORDER_ASSIGNED)


# =============================================================================
# PAYMENT STATUS (shared by orders.payment_status and payments.status)
# =============================================================================

PAYMENT_PENDING = "pending"
PAYMENT_HELD_ESCROW = "held_escrow"
PAYMENT_RELEASED = "released"
PAYMENT_REFUNDED = "refunded"
PAYMENT_FAILED = "failed"


# =============================================================================
# PAYMENT METHODS
# =============================================================================

PAYMENT_METHOD_PREPAY = "prepay"
PAYMENT_METHOD_POSTPAY = "postpay"
PAYMENT_METHOD_CHEQUE = "cheque"

VALID_PAYMENT_METHODS = [
    PAYMENT_METHOD_PREPAY,
    PAYMENT_METHOD_POSTPAY,
    PAYMENT_METHOD_CHEQUE,
]


# =============================================================================
# FRAUD ALERT SEVERITY
# =============================================================================

SEVERITY_LOW = "low"
SEVERITY_MEDIUM = "medium"
SEVERITY_HIGH = "high"
SEVERITY_CRITICAL = "critical"

VALID_SEVERITIES = [SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL]
ESCALATED_SEVERITIES = {SEVERITY_HIGH, SEVERITY_CRITICAL}


# =============================================================================
# INSURANCE POLICY STATUS
# =============================================================================

POLICY_ACTIVE = "active"
POLICY_CLAIMED = "claimed"
POLICY_EXPIRED = "expired"
POLICY_CANCELLED = "cancelled"
