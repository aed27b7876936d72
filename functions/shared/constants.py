"""
Shared constants for PlantsPack billing.
"""

# Tier configuration
TIER_NAMES = ["free", "medium", "premium"]
PAID_TIERS = ["medium", "premium"]

TIER_DISPLAY_NAMES = {
    "free": "Free",
    "medium": "Supporter",
    "premium": "Premium",
}

# Subscription status vocabulary (local, not the provider's)
SUBSCRIPTION_STATUSES = ["active", "past_due", "canceled", "unpaid"]

# Provider statuses we map one-to-one; anything else is treated as active
RECOGNIZED_PROVIDER_STATUSES = {
    "active": "active",
    "canceled": "canceled",
    "past_due": "past_due",
    "unpaid": "unpaid",
}

# Provider event type -> local event name
PROVIDER_EVENT_TYPES = {
    "checkout.session.completed": "checkout_completed",
    "invoice.payment_succeeded": "invoice_payment_succeeded",
    "invoice.payment_failed": "invoice_payment_failed",
    "customer.subscription.updated": "subscription_updated",
    "customer.subscription.deleted": "subscription_deleted",
}

# Record sort keys
SUBSCRIPTION_SK = "SUBSCRIPTION"
SUBSCRIPTION_REF_SK = "SUBSCRIPTION_REF"
SUBSCRIPTION_REF_PREFIX = "SUB#"
CONFIRMATION_SK_PREFIX = "CONFIRMATION#"

# Promotions
EARLY_PURCHASER_PROMOTION = "early_purchaser"
DEFAULT_EARLY_PURCHASER_LIMIT = 100

# Billing events retention
BILLING_EVENT_TTL_DAYS = 90

# Re-fetched subscriptions include the payment method and latest invoice
SUBSCRIPTION_EXPAND = ["latest_invoice", "default_payment_method"]
