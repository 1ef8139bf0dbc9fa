from models.models import UserRole
from services.notification_service import PlanNotificationService
from tests.factories import create_org, create_plan, create_user


class RecordingEmailService:
    def __init__(self):
        self.sent = []

    def send_plan_updated_email(self, **kwargs):
        self.sent.append(kwargs)
        return True


def test_only_active_admins_are_notified(session):
    create_plan(session, "planA", "price_A", "Basic")
    create_plan(session, "planB", "price_B", "Premium")
    create_org(session, name="Acme")
    create_user(session, "org1", "owner@acme.com", UserRole.SUPER_ADMIN)
    create_user(session, "org1", "admin@acme.com", UserRole.ADMIN)
    create_user(session, "org1", "member@acme.com", UserRole.MEMBER)
    create_user(session, "org1", "gone@acme.com", UserRole.ADMIN, is_active=False)
    emails = RecordingEmailService()

    sent = PlanNotificationService(session, email_service=emails).notify_plan_updated("org1", "planA", "planB")

    assert sent == 2
    assert sorted(e["to_email"] for e in emails.sent) == ["admin@acme.com", "owner@acme.com"]
    assert all(e["old_plan_name"] == "Basic" and e["new_plan_name"] == "Premium" for e in emails.sent)
    assert emails.sent[0]["org_name"] == "Acme"


def test_actor_is_not_notified_about_their_own_change(session):
    create_org(session)
    actor = create_user(session, "org1", "actor@acme.com")
    create_user(session, "org1", "other@acme.com")
    emails = RecordingEmailService()

    PlanNotificationService(session, email_service=emails).notify_plan_updated("org1", None, None, actor.id)

    assert [e["to_email"] for e in emails.sent] == ["other@acme.com"]


def test_cleared_plan_is_named_no_plan(session):
    create_plan(session, "planA", "price_A", "Basic")
    create_org(session)
    create_user(session, "org1", "admin@acme.com")
    emails = RecordingEmailService()

    PlanNotificationService(session, email_service=emails).notify_plan_updated("org1", "planA", None)

    assert emails.sent[0]["new_plan_name"] == "No plan"


def test_unknown_organization_sends_nothing(session):
    emails = RecordingEmailService()

    assert PlanNotificationService(session, email_service=emails).notify_plan_updated("ghost", "planA", "planB") == 0
    assert emails.sent == []
