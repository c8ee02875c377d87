import html
import logging
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

from core.config import Settings
from services.notifications import Notification, NotificationKind

logger = logging.getLogger(__name__)


def _euros(minor_units: Optional[int]) -> str:
    return f"{(minor_units or 0) / 100:.2f} €"


class EmailService:
    """
    Transactional billing emails for TeamMove, sent through SendGrid.

    When SENDGRID_API_KEY or MAIL_FROM is missing the service runs in mock
    mode and only logs what it would have sent.
    """

    def __init__(self, settings: Settings):
        self.sendgrid_api_key = settings.SENDGRID_API_KEY
        self.sender_email = settings.MAIL_FROM
        self.timeout = settings.NOTIFICATION_TIMEOUT_SECONDS
        self.frontend_url = settings.FRONTEND_URL

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    # ============================================================
    # ✅ Subject / body per notification kind
    # ============================================================
    def render(self, notification: Notification) -> tuple:
        ctx = notification.context
        # Organization and plan names are user-supplied; escape them for the HTML body
        org_name = html.escape(notification.organization_name or notification.organization_id)
        plan_name = html.escape(str(ctx.get("plan_name") or ""))
        billing_url = f"{self.frontend_url}/dashboard/billing"

        if notification.kind == NotificationKind.PAYMENT_CONFIRMATION:
            subject = f"✅ Paiement confirmé : {ctx.get('plan_name')}"
            body = (
                f"<p>Merci ! Le paiement de <strong>{_euros(ctx.get('price'))}</strong> pour "
                f"<strong>{plan_name}</strong> a bien été reçu pour {org_name}.</p>"
            )
        elif notification.kind == NotificationKind.RENEWAL_REMINDER:
            days = ctx.get("days_left")
            when = "demain" if days == 1 else f"dans {days} jours"
            subject = f"🔔 Votre abonnement expire {when}"
            body = (
                f"<p>L'offre <strong>{plan_name}</strong> de {org_name} expire {when}. "
                f"Renouvelez dès maintenant pour éviter toute interruption.</p>"
            )
        elif notification.kind == NotificationKind.EXPIRED:
            subject = "⚠️ Votre abonnement a expiré"
            body = (
                f"<p>L'offre <strong>{plan_name}</strong> de {org_name} a expiré et vous avez été "
                f"basculé vers l'offre Découverte.</p>"
            )
        elif notification.kind == NotificationKind.LOW_CREDITS:
            subject = "📉 Il vous reste peu d'événements"
            body = f"<p>Il reste <strong>{ctx.get('remaining')}</strong> événement(s) dans le pack de {org_name}.</p>"
        elif notification.kind == NotificationKind.PAYMENT_FAILED:
            subject = "❌ Échec du paiement de votre abonnement"
            body = f"<p>Le dernier paiement de {org_name} a échoué. Mettez à jour votre moyen de paiement.</p>"
        else:
            subject = "Votre abonnement TeamMove a été annulé"
            body = f"<p>L'abonnement de {org_name} a été annulé.</p>"

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            {body}
            <p><a href="{billing_url}">Gérer mon abonnement</a></p>
            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>L'équipe <strong>TeamMove</strong></p>
        </div>
        """
        return subject, html_content

    # ============================================================
    # ✅ Send (synchronous, run from the notification pool)
    # ============================================================
    def send_notification(self, notification: Notification) -> bool:
        if not notification.recipient:
            logger.warning("📭 No contact email for org %s, skipping %s", notification.organization_id, notification.kind.value)
            return False

        subject, html_content = self.render(notification)

        if not self.enabled:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Email] To: {notification.recipient} | {subject}")
            return True

        message = Mail(
            from_email=self.sender_email,
            to_emails=notification.recipient,
            subject=subject,
            html_content=html_content,
        )
        sg = SendGridAPIClient(self.sendgrid_api_key)
        sg.client.timeout = self.timeout
        response = sg.send(message)
        logger.info(f"✅ {notification.kind.value} email sent to {notification.recipient}. Status: {response.status_code}")
        return True
