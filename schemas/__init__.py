from .billing_schema import BillingUpdate, OrganizationBillingRead
from .webhook_schema import (
    StripeEvent,
    HandlerResult,
    OutcomeKind,
    Accepted, AlreadyProcessed, Rejected, TransientFailure,
    WebhookOutcome,
    WebhookResponse,
    outcome_detail,
)

__all__ = [
    # Billing
    "BillingUpdate", "OrganizationBillingRead",

    # Webhooks
    "StripeEvent", "HandlerResult", "OutcomeKind",
    "Accepted", "AlreadyProcessed", "Rejected", "TransientFailure",
    "WebhookOutcome", "WebhookResponse", "outcome_detail",
]
