# ================================================================
# services/stripe_client.py — Stripe API calls made by webhook handlers
# ================================================================
import logging
from typing import Optional, Dict, Any

import stripe

from core.config import settings

logger = logging.getLogger(__name__)


def _stripe_obj_to_dict(obj: Any) -> Dict[str, Any]:
    for attr in ("to_dict_recursive", "to_dict"):
        to_dict = getattr(obj, attr, None)
        if callable(to_dict):
            return to_dict()
    return dict(obj)


class StripeClient:
    """
    Thin wrapper over the Stripe SDK so handlers receive plain dicts
    and tests can swap in a fake.
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        if not self.api_key:
            logger.warning("⚠️ STRIPE_SECRET_KEY not set — Stripe API calls from webhooks will fail")

    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        return _stripe_obj_to_dict(subscription)

    def update_subscription_price(
        self,
        subscription_id: str,
        price_id: str,
        quantity: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Swap the subscription's first line item to a new price, prorating."""
        subscription = self.retrieve_subscription(subscription_id)
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            raise ValueError(f"Subscription {subscription_id} has no items to update")

        item: Dict[str, Any] = {"id": items[0]["id"], "price": price_id}
        if quantity:
            item["quantity"] = quantity

        updated = stripe.Subscription.modify(
            subscription_id,
            items=[item],
            proration_behavior="create_prorations",
            api_key=self.api_key,
        )
        logger.info(f"💳 Subscription {subscription_id} moved to price {price_id}")
        return _stripe_obj_to_dict(updated)
