import logging
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from core.config import settings

logger = logging.getLogger(__name__)


class EmailService:
    """
    Centralized email utility for BillSync.
    Sends billing notifications to organization admins via SendGrid.
    """

    def __init__(self, api_key: Optional[str] = None, sender_email: Optional[str] = None):
        self.sendgrid_api_key = api_key if api_key is not None else settings.SENDGRID_API_KEY
        self.sender_email = sender_email if sender_email is not None else settings.MAIL_FROM

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    def send_email(self, to_email: str, subject: str, html_content: str) -> bool:
        if not self.enabled:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Email] To: {to_email} | Subject: {subject}")
            return True

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=to_email,
                subject=subject,
                html_content=html_content,
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            logger.info(f"✅ Email sent to {to_email}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception("❌ Failed to send email to %s: %s", to_email, e)
            return False

    # ============================================================
    # ✅ Plan Updated Email
    # ============================================================
    def send_plan_updated_email(
        self,
        to_email: str,
        admin_name: str,
        org_name: str,
        old_plan_name: str,
        new_plan_name: str,
        billing_link: str,
    ) -> bool:
        subject = f"Your {org_name} plan has changed to {new_plan_name}"

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>Hello {admin_name},</h2>
            <p>The subscription plan for <strong>{org_name}</strong> has been updated.</p>

            <table style="margin: 16px 0;">
                <tr><td><strong>Previous plan:</strong></td><td>{old_plan_name}</td></tr>
                <tr><td><strong>New plan:</strong></td><td>{new_plan_name}</td></tr>
            </table>

            <p style="text-align: center; margin: 20px 0;">
                <a href="{billing_link}" style="
                    background-color: #4F46E5;
                    color: white;
                    padding: 12px 28px;
                    text-decoration: none;
                    border-radius: 6px;
                    font-weight: bold;
                    display: inline-block;
                ">View billing</a>
            </p>

            <p>If you did not expect this change, contact your account owner.</p>
            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>Best regards,<br><strong>The BillSync Team</strong></p>
        </div>
        """

        return self.send_email(to_email, subject, html_content)
