# ================================================================
# services/webhook_handlers.py — One handler per Stripe event type
# ================================================================
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any, Callable

import stripe

from models.models import BillingStatus, Organization, utcnow, from_unix
from schemas.billing_schema import BillingUpdate
from schemas.webhook_schema import StripeEvent, HandlerResult
from services.billing_repository import BillingRepository
from services.billing_status import map_stripe_status
from services.event_ordering import invoice_subscription_id

logger = logging.getLogger(__name__)

UPDATE_EXISTING_SUBSCRIPTION = "update_existing_subscription"


@dataclass
class SubscriptionSnapshot:
    subscription_id: str
    subscription_item_id: Optional[str]
    price_id: Optional[str]
    quantity: int
    status: Optional[str]
    current_period_end: Optional[Any]


def extract_subscription_data(subscription: Dict[str, Any]) -> SubscriptionSnapshot:
    """Read the first line item of a subscription; newer API versions keep the period on the item."""
    items = (subscription.get("items") or {}).get("data") or []
    item = items[0] if items else None
    if item is None:
        logger.warning(f"⚠️ Subscription {subscription.get('id')} has no items")

    period_end = subscription.get("current_period_end")
    if period_end is None and item is not None:
        period_end = item.get("current_period_end")

    return SubscriptionSnapshot(
        subscription_id=subscription.get("id"),
        subscription_item_id=item.get("id") if item else None,
        price_id=((item or {}).get("price") or {}).get("id"),
        quantity=((item or {}).get("quantity")) or 1,
        status=subscription.get("status"),
        current_period_end=from_unix(period_end),
    )


def _parse_seats(raw: Any, correlation_id: str) -> Optional[int]:
    if raw in (None, ""):
        return None
    try:
        seats = int(raw)
    except (TypeError, ValueError):
        logger.warning(f"⚠️ Ignoring invalid seats metadata {raw!r} [{correlation_id}]")
        return None
    return seats if seats > 0 else None


def _customer_id(obj: Dict[str, Any]) -> Optional[str]:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


class WebhookEventHandlers:
    """
    Computes billing state transitions from Stripe events.

    Every handler returns a HandlerResult. Business problems (missing
    metadata, unknown organization) come back as rejections; storage and
    Stripe API errors are raised and left to the retry loop.
    """

    def __init__(self, billing: BillingRepository, notifier, stripe_client):
        self.billing = billing
        self.notifier = notifier
        self.stripe_client = stripe_client
        self.handlers: Dict[str, Callable[[StripeEvent, str], HandlerResult]] = {
            "checkout.session.completed": self.handle_checkout_session_completed,
            "customer.subscription.created": self.handle_subscription_created,
            "customer.subscription.updated": self.handle_subscription_updated,
            "customer.subscription.deleted": self.handle_subscription_deleted,
            "invoice.paid": self.handle_invoice_paid,
            "invoice.payment_failed": self.handle_invoice_payment_failed,
            "payment_intent.requires_action": self.handle_payment_intent_requires_action,
            "payment_intent.succeeded": self.handle_payment_intent_succeeded,
            "payment_intent.payment_failed": self.handle_payment_intent_failed,
            "setup_intent.succeeded": self.handle_setup_intent_succeeded,
            "checkout.session.expired": self.handle_checkout_session_expired,
            "customer.subscription.trial_will_end": self.handle_trial_will_end,
        }

    def dispatch(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info(f"🤷 Unhandled webhook event type: {event.type} [{correlation_id}]")
            return HandlerResult.ok(f"Event type {event.type} not processed")
        return handler(event, correlation_id)

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------
    def _org_by_customer(self, obj: Dict[str, Any]) -> Optional[Organization]:
        return self.billing.get_organization_by_customer_id(_customer_id(obj))

    def _org_by_metadata(self, obj: Dict[str, Any]) -> Optional[Organization]:
        org_id = (obj.get("metadata") or {}).get("org_id")
        if not org_id:
            return None
        return self.billing.get_organization(org_id)

    def _notify_plan_change(
        self,
        org: Organization,
        old_plan_id: Optional[str],
        new_plan_id: Optional[str],
        correlation_id: str,
    ) -> None:
        if old_plan_id == new_plan_id:
            return
        try:
            self.notifier.notify_plan_updated(org.id, old_plan_id, new_plan_id, None)
            logger.info(f"📧 Plan update notification sent for org {org.name} [{correlation_id}]: {old_plan_id} → {new_plan_id}")
        except Exception as e:
            # Notification failures never fail the webhook
            logger.error(f"❌ Failed to send plan update notification for org {org.name} [{correlation_id}]: {e}")

    def _apply_subscription(
        self,
        org: Organization,
        subscription: Dict[str, Any],
        correlation_id: str,
        clear_plan_without_price: bool,
    ) -> HandlerResult:
        snapshot = extract_subscription_data(subscription)
        plan = self.billing.get_plan_by_price_id(snapshot.price_id) if snapshot.price_id else None
        if snapshot.price_id and not plan:
            logger.warning(f"⚠️ Plan not found for price ID {snapshot.price_id}, updating without plan reference [{correlation_id}]")

        new_status = map_stripe_status(snapshot.status)
        previous_plan_id = org.plan_id

        update = BillingUpdate(
            stripe_customer_id=_customer_id(subscription) or org.stripe_customer_id,
            stripe_subscription_id=snapshot.subscription_id,
            stripe_subscription_item_id=snapshot.subscription_item_id,
            billing_status=new_status,
            active_user_count=snapshot.quantity,
            current_period_end=snapshot.current_period_end,
            last_billing_sync=utcnow(),
        )
        if plan:
            update.plan_id = plan.id
        elif not snapshot.price_id and clear_plan_without_price:
            update.plan_id = None

        logger.info(
            f"🔄 Subscription changes for org {org.id} [{correlation_id}]: "
            f"status {org.billing_status} → {new_status.value}, "
            f"seats {org.active_user_count} → {snapshot.quantity}, "
            f"plan {previous_plan_id} → {update.plan_id if 'plan_id' in update.model_fields_set else previous_plan_id}"
        )

        self.billing.update_organization_billing(org.id, update)

        if "plan_id" in update.model_fields_set:
            self._notify_plan_change(org, previous_plan_id, update.plan_id, correlation_id)

        return HandlerResult.ok(
            f"Subscription synced for organization {org.name} ({new_status.value}, {snapshot.quantity} seats)"
        )

    # ------------------------------------------------------------
    # checkout.session.completed
    # ------------------------------------------------------------
    def handle_checkout_session_completed(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        session = event.data_object
        metadata = session.get("metadata") or {}
        org_id = metadata.get("org_id")

        logger.info(
            f"🛒 Checkout session completed [{correlation_id}]: session={session.get('id')} "
            f"customer={_customer_id(session)} subscription={session.get('subscription')}"
        )

        if not org_id:
            return HandlerResult.rejected("Missing org_id in checkout session metadata")

        # The customer id may not be linked yet, so look up by metadata
        org = self.billing.get_organization(org_id)
        if not org:
            return HandlerResult.rejected(f"Organization not found for org_id: {org_id}")

        plan = None
        intended_plan_id = metadata.get("plan_id")
        if intended_plan_id:
            plan = self.billing.get_plan(intended_plan_id)
            if not plan:
                logger.warning(f"⚠️ Plan not found for plan_id: {intended_plan_id} [{correlation_id}]")

        subscription_id = session.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")

        update = BillingUpdate(
            stripe_customer_id=_customer_id(session) or org.stripe_customer_id,
            stripe_subscription_id=subscription_id or org.stripe_subscription_id,
            billing_status=BillingStatus.INCOMPLETE,
            last_billing_sync=utcnow(),
        )
        if plan:
            update.plan_id = plan.id
        seats = _parse_seats(metadata.get("seats"), correlation_id)
        if seats:
            update.active_user_count = seats

        previous_plan_id = org.plan_id
        self.billing.update_organization_billing(org.id, update)

        if plan:
            self._notify_plan_change(org, previous_plan_id, plan.id, correlation_id)

        logger.info(f"✅ Checkout session processed for org {org.name} [{correlation_id}]: plan={plan.id if plan else None} seats={seats}")
        return HandlerResult.ok(
            f"Checkout session completed for organization {org.name}, pending subscription verification"
        )

    # ------------------------------------------------------------
    # customer.subscription.created / updated
    # ------------------------------------------------------------
    def handle_subscription_created(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        subscription = event.data_object
        org = self._org_by_customer(subscription)
        if not org:
            return HandlerResult.rejected(f"Organization not found for customer ID: {_customer_id(subscription)}")

        logger.info(f"🆕 Subscription {subscription.get('id')} created for org {org.name} [{correlation_id}]")
        return self._apply_subscription(org, subscription, correlation_id, clear_plan_without_price=False)

    def handle_subscription_updated(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        subscription = event.data_object
        org = self._org_by_customer(subscription)
        if not org:
            return HandlerResult.rejected(f"Organization not found for customer ID: {_customer_id(subscription)}")

        logger.info(f"📝 Subscription {subscription.get('id')} updated for org {org.name} [{correlation_id}]")
        return self._apply_subscription(org, subscription, correlation_id, clear_plan_without_price=True)

    # ------------------------------------------------------------
    # customer.subscription.deleted
    # ------------------------------------------------------------
    def handle_subscription_deleted(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        subscription = event.data_object
        org = self._org_by_customer(subscription)
        if not org:
            return HandlerResult.rejected(f"Organization not found for customer ID: {_customer_id(subscription)}")

        immediate = subscription.get("ended_at") is not None
        cancel_mode = "immediate" if immediate else "at_period_end"

        update = BillingUpdate(
            billing_status=BillingStatus.CANCELED,
            last_billing_sync=utcnow(),
        )
        if immediate:
            update.plan_id = None
            update.active_user_count = 0
            update.stripe_subscription_id = None
            update.stripe_subscription_item_id = None
        # At period end the plan and seats stay until the period runs out

        self.billing.update_organization_billing(org.id, update)

        logger.info(f"🗑️ Subscription cancelled for org {org.name} [{correlation_id}]: mode={cancel_mode}")
        return HandlerResult.ok(f"Subscription cancelled for organization {org.name} ({cancel_mode})")

    # ------------------------------------------------------------
    # invoice.paid
    # ------------------------------------------------------------
    def handle_invoice_paid(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        invoice = event.data_object
        org = self._org_by_customer(invoice)
        if not org:
            return HandlerResult.rejected(f"Organization not found for customer ID: {_customer_id(invoice)}")

        logger.info(
            f"💰 Invoice paid [{correlation_id}]: invoice={invoice.get('id')} "
            f"amount={invoice.get('amount_paid')} {invoice.get('currency')}"
        )

        update = BillingUpdate(
            stripe_customer_id=_customer_id(invoice),
            billing_status=BillingStatus.ACTIVE,
            last_billing_sync=utcnow(),
        )

        subscription_id = invoice_subscription_id(invoice)
        if subscription_id:
            # Stripe is the source of truth for plan and seats after a payment
            snapshot = extract_subscription_data(self.stripe_client.retrieve_subscription(subscription_id))
            update.stripe_subscription_id = snapshot.subscription_id
            update.stripe_subscription_item_id = snapshot.subscription_item_id
            update.active_user_count = snapshot.quantity
            update.current_period_end = snapshot.current_period_end
            if snapshot.price_id:
                plan = self.billing.get_plan_by_price_id(snapshot.price_id)
                if plan:
                    update.plan_id = plan.id
                else:
                    logger.warning(f"⚠️ Plan not found for price ID {snapshot.price_id} [{correlation_id}]")

        self.billing.update_organization_billing(org.id, update)

        logger.info(f"✅ Invoice payment processed for org {org.name} [{correlation_id}]")
        return HandlerResult.ok(f"Payment processed for organization {org.name} (invoice: {invoice.get('id')})")

    # ------------------------------------------------------------
    # invoice.payment_failed
    # ------------------------------------------------------------
    def handle_invoice_payment_failed(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        invoice = event.data_object
        org = self._org_by_customer(invoice)
        if not org:
            return HandlerResult.rejected(f"Organization not found for customer ID: {_customer_id(invoice)}")

        will_retry = bool(invoice.get("next_payment_attempt"))
        status = BillingStatus.PAST_DUE if will_retry else BillingStatus.UNPAID

        # Dunning: plan, seats and subscription id are left untouched
        update = BillingUpdate(
            stripe_customer_id=_customer_id(invoice),
            billing_status=status,
            last_billing_sync=utcnow(),
        )
        self.billing.update_organization_billing(org.id, update)

        logger.info(
            f"💳 Payment failure processed for org {org.name} [{correlation_id}]: "
            f"status={status.value} attempt={invoice.get('attempt_count')} retry_scheduled={will_retry} "
            f"plan={org.plan_id} seats={org.active_user_count} preserved"
        )
        return HandlerResult.ok(f"Payment failure processed for organization {org.name} ({status.value}, plan preserved)")

    # ------------------------------------------------------------
    # payment_intent.*
    # ------------------------------------------------------------
    def handle_payment_intent_requires_action(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        intent = event.data_object
        org_id = (intent.get("metadata") or {}).get("org_id")
        if not org_id:
            return HandlerResult.rejected("No org_id in payment intent metadata for 3DS authentication")

        org = self.billing.get_organization(org_id)
        if not org:
            return HandlerResult.rejected(f"Organization not found for org_id: {org_id}")

        self.billing.update_organization_billing(
            org.id, BillingUpdate(billing_status=BillingStatus.PENDING_3DS, last_billing_sync=utcnow())
        )
        logger.info(f"🔐 3DS authentication pending for org {org.name} [{correlation_id}]")
        return HandlerResult.ok(f"3DS authentication required for organization {org.name}")

    def handle_payment_intent_succeeded(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        intent = event.data_object

        if intent.get("invoice"):
            logger.info(f"ℹ️ Payment intent {intent.get('id')} belongs to an invoice, invoice.paid is authoritative [{correlation_id}]")
            return HandlerResult.ok("Payment succeeded - will be handled by invoice.paid webhook")

        org = self._org_by_metadata(intent)
        if org and org.billing_status == BillingStatus.PENDING_3DS.value:
            self.billing.update_organization_billing(
                org.id, BillingUpdate(billing_status=BillingStatus.ACTIVE, last_billing_sync=utcnow())
            )
            logger.info(f"✅ Organization {org.name} activated after 3DS completion [{correlation_id}]")

        amount = (intent.get("amount") or 0) / 100
        currency = (intent.get("currency") or "").upper()
        return HandlerResult.ok(f"Payment succeeded for amount {amount} {currency}")

    def handle_payment_intent_failed(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        intent = event.data_object
        error = (intent.get("last_payment_error") or {}).get("message") or "Unknown error"

        org = self._org_by_metadata(intent)
        if org:
            self.billing.update_organization_billing(
                org.id, BillingUpdate(billing_status=BillingStatus.PAYMENT_FAILED, last_billing_sync=utcnow())
            )
            logger.info(f"❌ Organization {org.name} marked as payment failed [{correlation_id}]")

        return HandlerResult.ok(f"Payment failed: {error}")

    # ------------------------------------------------------------
    # setup_intent.succeeded
    # ------------------------------------------------------------
    def handle_setup_intent_succeeded(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        setup_intent = event.data_object
        metadata = setup_intent.get("metadata") or {}

        if metadata.get("action") != UPDATE_EXISTING_SUBSCRIPTION or not metadata.get("target_subscription_id"):
            return HandlerResult.ok("Setup intent completed successfully")

        subscription_id = metadata["target_subscription_id"]
        new_price_id = metadata.get("new_price_id")
        if not new_price_id:
            logger.warning(f"⚠️ Queued subscription change for {subscription_id} has no new_price_id [{correlation_id}]")
            return HandlerResult.ok("Setup intent completed successfully")

        quantity = _parse_seats(metadata.get("new_quantity"), correlation_id)
        try:
            self.stripe_client.update_subscription_price(subscription_id, new_price_id, quantity)
        except (stripe.InvalidRequestError, ValueError) as e:
            return HandlerResult.rejected(f"Could not apply queued change to subscription {subscription_id}: {e}")

        logger.info(f"✅ Subscription {subscription_id} updated after setup intent completion [{correlation_id}]")
        return HandlerResult.ok(f"Setup intent completed, subscription {subscription_id} moved to {new_price_id}")

    # ------------------------------------------------------------
    # checkout.session.expired
    # ------------------------------------------------------------
    def handle_checkout_session_expired(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        session = event.data_object
        org = self._org_by_metadata(session)

        if org and org.billing_status == BillingStatus.INCOMPLETE.value:
            self.billing.update_organization_billing(
                org.id, BillingUpdate(billing_status=BillingStatus.SETUP_REQUIRED, last_billing_sync=utcnow())
            )
            logger.info(f"🔄 Organization {org.name} reset from incomplete to setup_required [{correlation_id}]")

        return HandlerResult.ok(f"Checkout session {session.get('id')} expired - organization status updated if needed")

    # ------------------------------------------------------------
    # customer.subscription.trial_will_end
    # ------------------------------------------------------------
    def handle_trial_will_end(self, event: StripeEvent, correlation_id: str) -> HandlerResult:
        subscription = event.data_object
        org = self._org_by_customer(subscription)
        if not org:
            return HandlerResult.rejected(f"Organization not found for customer ID: {_customer_id(subscription)}")

        self.billing.update_organization_billing(
            org.id, BillingUpdate(billing_status=BillingStatus.TRIAL_ENDING, last_billing_sync=utcnow())
        )
        logger.info(f"⚠️ Trial ending soon for org {org.name} [{correlation_id}]")
        return HandlerResult.ok(f"Trial ending notification processed for organization {org.name}")
