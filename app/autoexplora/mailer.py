"""Outgoing e-mail over SMTP, plus the handful of transactional messages the site sends."""
from __future__ import annotations

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr

from flask import current_app, render_template

logger = logging.getLogger(__name__)


def get_smtp_config() -> dict:
    cfg = current_app.config
    return {
        "host": cfg.get("SMTP_HOST") or "",
        "port": int(cfg.get("SMTP_PORT") or 587),
        "use_tls": bool(cfg.get("SMTP_USE_TLS", True)),
        "username": cfg.get("SMTP_USERNAME") or "",
        "password": cfg.get("SMTP_PASSWORD") or "",
        "from_email": cfg.get("EMAIL_FROM") or "",
    }


def is_smtp_configured() -> bool:
    config = get_smtp_config()
    return bool(config["host"] and config["from_email"])


def send_email(to_email: str, subject: str, html_body: str, text_body: str | None = None) -> tuple[bool, str]:
    """
    Send one message. Returns (success, error_message); never raises for delivery failures.
    """
    config = get_smtp_config()
    if not config["host"]:
        logger.warning("SMTP not configured; skipping email to %s (%s)", to_email, subject)
        return False, "SMTP host not configured"

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = config["from_email"]
    msg["To"] = to_email
    if text_body:
        msg.attach(MIMEText(text_body, "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    envelope_from = parseaddr(config["from_email"])[1] or config["from_email"]

    try:
        with smtplib.SMTP(config["host"], config["port"], timeout=30) as server:
            if config["use_tls"]:
                server.starttls(context=ssl.create_default_context())
            if config["username"] and config["password"]:
                server.login(config["username"], config["password"])
            server.sendmail(envelope_from, [to_email], msg.as_string())
    except smtplib.SMTPAuthenticationError as e:
        logger.error("SMTP authentication failed: %s", e)
        return False, f"SMTP authentication failed: {e}"
    except (smtplib.SMTPException, OSError) as e:
        logger.error("SMTP error sending to %s: %s", to_email, e)
        return False, f"SMTP error: {e}"

    logger.info("Email sent to %s (%s)", to_email, subject)
    return True, ""


def _site_url(path: str = "") -> str:
    return f"{current_app.config.get('SITE_URL', '').rstrip('/')}{path}"


def send_verification_email(email: str, name: str | None, token: str) -> tuple[bool, str]:
    link = _site_url(f"/auth/verify-email?token={token}")
    html = render_template("emails/verify_email.html", name=name, link=link)
    return send_email(email, "Verifica tu correo en AutoExplora", html, f"Verifica tu correo: {link}")


def send_password_reset_email(email: str, name: str | None, token: str) -> tuple[bool, str]:
    link = _site_url(f"/auth/reset-password?token={token}")
    html = render_template("emails/reset_password.html", name=name, link=link)
    return send_email(email, "Restablece tu contraseña", html, f"Restablece tu contraseña: {link}")


def send_lead_assigned_email(email: str, name: str | None, lead_name: str, lead_id: int, assigned_by: str) -> tuple[bool, str]:
    link = _site_url(f"/dealer/leads/{lead_id}")
    html = render_template(
        "emails/lead_assigned.html", name=name, lead_name=lead_name, assigned_by=assigned_by, link=link
    )
    return send_email(email, f"Nuevo lead asignado: {lead_name}", html)


def send_new_lead_email(email: str, dealer_name: str, lead_name: str, message: str | None) -> tuple[bool, str]:
    html = render_template(
        "emails/new_lead.html", dealer_name=dealer_name, lead_name=lead_name, message=message, link=_site_url("/dealer/leads")
    )
    return send_email(email, f"Nuevo contacto de {lead_name}", html)
