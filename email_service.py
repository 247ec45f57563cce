import logging
import smtplib
from email.message import EmailMessage

import config
from errors import ExternalServiceFailure

logger = logging.getLogger(__name__)


def send_email(to: str, subject: str, html_content: str) -> None:
    """Send an HTML email over SMTP with STARTTLS.

    Raises ExternalServiceFailure when SMTP is not configured or delivery
    fails. Callers that treat email as best-effort catch it.
    """
    if not config.smtp_configured():
        raise ExternalServiceFailure("SMTP credentials missing. Check environment variables.")

    msg = EmailMessage()
    msg["From"] = config.SMTP_FROM
    msg["To"] = to
    msg["Subject"] = subject
    msg.set_content("This message requires an HTML-capable email client.")
    msg.add_alternative(html_content, subtype="html")

    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT, timeout=15) as server:
            server.starttls()
            server.login(config.SMTP_USER, config.SMTP_PASS)
            server.send_message(msg)
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Error sending email to %s: %s", to, e)
        raise ExternalServiceFailure(f"Error sending email: {e}") from e


def render(heading: str, body: str, link: str = None, link_label: str = None) -> str:
    """Wrap a message in the shared HTML layout."""
    button = ""
    if link:
        button = f"""
          <div style="text-align: center; margin: 30px 0;">
            <a href="{link}"
               style="background-color: #B45309; color: white; padding: 12px 24px; text-decoration: none; border-radius: 4px;">
              {link_label or link}
            </a>
          </div>"""
    return f"""
        <div style="max-width: 600px; margin: 0 auto; padding: 20px; font-family: Arial, sans-serif;">
          <h2 style="color: #B45309;">{heading}</h2>
          <p>{body}</p>{button}
        </div>
    """
