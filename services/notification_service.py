# ================================================================
# services/notification_service.py — Plan change notifications
# ================================================================
import logging
from typing import Optional, List

from sqlmodel import Session, select

from core.config import settings
from models.models import Organization, Plan, User, UserRole
from services.email_service import EmailService

logger = logging.getLogger(__name__)

ADMIN_ROLES = [UserRole.SUPER_ADMIN.value, UserRole.ADMIN.value]


class PlanNotificationService:
    """Tells an organization's admins that its plan changed."""

    def __init__(self, session: Session, email_service: Optional[EmailService] = None):
        self.session = session
        self.email_service = email_service or EmailService()

    def _plan_name(self, plan_id: Optional[str]) -> str:
        if not plan_id:
            return "No plan"
        plan = self.session.get(Plan, plan_id)
        return plan.name if plan else plan_id

    def _admins(self, org_id: str) -> List[User]:
        return list(
            self.session.exec(
                select(User).where(
                    User.organization_id == org_id,
                    User.role.in_(ADMIN_ROLES),
                    User.is_active == True,  # noqa: E712
                )
            ).all()
        )

    def notify_plan_updated(
        self,
        org_id: str,
        old_plan_id: Optional[str],
        new_plan_id: Optional[str],
        actor_user_id: Optional[str] = None,
    ) -> int:
        """Email every active admin; returns how many emails were sent."""
        org = self.session.get(Organization, org_id)
        if not org:
            logger.warning(f"⚠️ Plan update notification skipped, organization {org_id} not found")
            return 0

        admins = [a for a in self._admins(org_id) if a.id != actor_user_id]
        if not admins:
            logger.info(f"ℹ️ No admins to notify for org {org.name}")
            return 0

        old_name = self._plan_name(old_plan_id)
        new_name = self._plan_name(new_plan_id)

        sent = 0
        for admin in admins:
            if self.email_service.send_plan_updated_email(
                to_email=admin.email,
                admin_name=admin.full_name,
                org_name=org.name,
                old_plan_name=old_name,
                new_plan_name=new_name,
                billing_link=settings.BILLING_SETTINGS_URL,
            ):
                sent += 1

        logger.info(f"📧 Plan update notification sent to {sent}/{len(admins)} admins of {org.name}: {old_name} → {new_name}")
        return sent
