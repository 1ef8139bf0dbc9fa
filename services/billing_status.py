import logging

from models.models import BillingStatus

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "active": BillingStatus.ACTIVE,
    "past_due": BillingStatus.PAST_DUE,
    "canceled": BillingStatus.CANCELED,
    "cancelled": BillingStatus.CANCELED,
    "unpaid": BillingStatus.UNPAID,
    "incomplete": BillingStatus.INCOMPLETE,
    "incomplete_expired": BillingStatus.INCOMPLETE_EXPIRED,
    "trialing": BillingStatus.TRIALING,
    "paused": BillingStatus.PAUSED,
}


def map_stripe_status(stripe_status) -> BillingStatus:
    """Map a Stripe subscription status to a billing status. Never raises."""
    status = STRIPE_STATUS_MAP.get(stripe_status) if isinstance(stripe_status, str) else None
    if status is None:
        logger.warning(f"⚠️ Unknown Stripe status: {stripe_status!r}, defaulting to 'unpaid'")
        return BillingStatus.UNPAID
    return status
