import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict

from jinja2 import Environment, FileSystemLoader, select_autoescape

from core.config import settings


logger = logging.getLogger(__name__)

PLACEHOLDER_PASSWORD = "your-gmail-app-password"

# Jinja2 environment for email templates
_templates_env = Environment(
    loader=FileSystemLoader(searchpath=os.path.join(os.path.dirname(os.path.dirname(__file__)), "templates")),
    autoescape=select_autoescape(["html", "xml"]),
)


def render_template(template_path: str, context: Dict[str, Any]) -> str:
    """Render a text template from templates/ directory with provided context."""
    template = _templates_env.get_template(template_path)
    return template.render(**context)


def delivery_enabled() -> bool:
    return not (settings.TESTING or not settings.SMTP_PASSWORD or settings.SMTP_PASSWORD == PLACEHOLDER_PASSWORD)


def deliver_email(to_email: str, subject: str, body: str) -> bool:
    """
    Send one plain-text email over SMTP.

    Returns False without connecting when SMTP is not configured (or in
    tests). SMTP errors propagate so the calling task can retry.
    """
    if not delivery_enabled():
        logger.info("Email delivery disabled, skipping", extra={"to": to_email, "subject": subject})
        return False

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = settings.SMTP_FROM or settings.SMTP_USERNAME
    msg["To"] = to_email
    msg.set_content(body)

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
        server.starttls()
        if settings.SMTP_USERNAME and settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USERNAME, settings.SMTP_PASSWORD)
        server.send_message(msg)

    logger.info("Email sent", extra={"to": to_email, "subject": subject})
    return True
