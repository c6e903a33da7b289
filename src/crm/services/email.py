"""Email service — invitation emails via the Brevo transactional API.

Runs in mock mode (logs instead of sending) outside production or when
no API key is configured. Delivery failures raise EmailDeliveryError;
callers decide whether that aborts anything (invitations don't).
"""

from typing import Optional

import httpx
import structlog

from crm.config import settings

logger = structlog.get_logger()

INVITATION_HTML = """
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
    <h2>You've been invited to join {organisation_name}</h2>
    <p>Hello {recipient_name},</p>
    <p>{inviter_email} has invited you to join their organisation on CRM Dashboard.</p>
    <div style="margin: 30px 0;">
        <a href="{accept_url}" style="background-color: #4f46e5; color: white; padding: 12px 24px; text-decoration: none; border-radius: 4px; display: inline-block;">
            Accept Invitation
        </a>
    </div>
    <p>This invitation link will expire in {expire_days} days.</p>
    <p>If you have any questions, please contact the person who invited you.</p>
</div>
"""


class EmailDeliveryError(Exception):
    """Raised when the email provider rejects or can't be reached."""


class EmailService:
    """Sends transactional email through an HTTP provider."""

    def __init__(
        self,
        api_key: str = "",
        api_url: str = "",
        sender_email: str = "",
        sender_name: str = "",
        mock: Optional[bool] = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.sender_email = sender_email
        self.sender_name = sender_name
        self.timeout = timeout
        if mock is None:
            mock = settings.environment != "production" or not api_key
        self.mock = mock

    async def send(self, to: list[dict], subject: str, html: str) -> None:
        """Send one email. Raises EmailDeliveryError on failure."""
        payload = {
            "sender": {"email": self.sender_email, "name": self.sender_name},
            "to": to,
            "subject": subject,
            "htmlContent": html,
        }

        if self.mock:
            logger.info(
                "email.mock_sent",
                to=[r["email"] for r in to],
                subject=subject,
                preview=html.strip()[:100],
            )
            return

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(
                    self.api_url,
                    json=payload,
                    headers={"api-key": self.api_key},
                )
        except httpx.HTTPError as e:
            raise EmailDeliveryError(f"Email provider unreachable: {e}")

        if r.status_code >= 400:
            raise EmailDeliveryError(f"Email API error: {r.status_code} {r.text[:200]}")

    async def send_invitation(
        self,
        to_email: str,
        to_name: str,
        organisation_name: str,
        inviter_email: str,
        accept_url: str,
    ) -> None:
        html = INVITATION_HTML.format(
            organisation_name=organisation_name,
            recipient_name=to_name,
            inviter_email=inviter_email,
            accept_url=accept_url,
            expire_days=settings.invitation_token_expire_days,
        )
        await self.send(
            to=[{"email": to_email, "name": to_name}],
            subject=f"Invitation to join {organisation_name}",
            html=html,
        )


def get_email_service() -> EmailService:
    """FastAPI dependency — configured from settings."""
    return EmailService(
        api_key=settings.email_api_key,
        api_url=settings.email_api_url,
        sender_email=settings.email_sender,
        sender_name=settings.email_sender_name,
    )
