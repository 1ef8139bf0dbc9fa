# ================================================================
# services/billing_repository.py — Organization billing persistence
# ================================================================
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from models.models import Organization, Plan
from schemas.billing_schema import BillingUpdate, OrganizationBillingRead

logger = logging.getLogger(__name__)


class BillingRepository:
    """Reads organizations and plans, and writes the billing sub-record."""

    def __init__(self, session: Session):
        self.session = session

    # ------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------
    def get_organization(self, org_id: str) -> Optional[Organization]:
        return self.session.get(Organization, org_id)

    def get_organization_by_customer_id(self, customer_id: str) -> Optional[Organization]:
        if not customer_id:
            return None
        return self.session.exec(
            select(Organization).where(Organization.stripe_customer_id == customer_id)
        ).first()

    def update_organization_billing(self, org_id: str, update: BillingUpdate) -> Organization:
        org = self.session.get(Organization, org_id)
        if not org:
            raise LookupError(f"Organization not found: {org_id}")

        before = OrganizationBillingRead.model_validate(org)
        changes = update.changes()
        for field, value in changes.items():
            setattr(org, field, value)

        try:
            self.session.add(org)
            self.session.commit()
            self.session.refresh(org)
        except SQLAlchemyError:
            self.session.rollback()
            raise

        after = OrganizationBillingRead.model_validate(org)
        diff = {
            field: f"{getattr(before, field)} → {getattr(after, field)}"
            for field in changes
            if field != "last_billing_sync" and getattr(before, field) != getattr(after, field)
        }
        logger.debug(f"🧾 Billing updated for org {org_id}: {diff or 'no change'}")
        return org

    # ------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------
    def get_plan(self, plan_id: str) -> Optional[Plan]:
        return self.session.get(Plan, plan_id)

    def get_plan_by_price_id(self, price_id: str) -> Optional[Plan]:
        if not price_id:
            return None
        return self.session.exec(
            select(Plan).where(Plan.stripe_price_id == price_id)
        ).first()

    def rollback(self) -> None:
        self.session.rollback()
