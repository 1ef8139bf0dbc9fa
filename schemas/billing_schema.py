# billing_schema.py
from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime

from models.models import BillingStatus


# ---------------------------
# Organization billing
# ---------------------------
class BillingUpdate(BaseModel):
    """
    Partial update of an organization's billing sub-record.

    Only fields explicitly set are written, so passing ``plan_id=None``
    clears the plan while omitting ``plan_id`` leaves it untouched.
    """

    billing_status: Optional[BillingStatus] = None
    plan_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    stripe_subscription_item_id: Optional[str] = None
    active_user_count: Optional[int] = Field(default=None, ge=0)
    current_period_end: Optional[datetime] = None
    last_billing_sync: Optional[datetime] = None

    def changes(self) -> dict:
        data = self.model_dump(exclude_unset=True)
        if "billing_status" in data and data["billing_status"] is not None:
            data["billing_status"] = BillingStatus(data["billing_status"]).value
        return data


class OrganizationBillingRead(BaseModel):
    id: str
    name: str
    billing_status: Optional[str]
    plan_id: Optional[str]
    stripe_customer_id: Optional[str]
    stripe_subscription_id: Optional[str]
    stripe_subscription_item_id: Optional[str]
    active_user_count: int
    current_period_end: Optional[datetime]
    last_billing_sync: Optional[datetime]

    model_config = ConfigDict(from_attributes=True)

