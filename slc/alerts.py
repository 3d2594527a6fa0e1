from __future__ import annotations

import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from . import db
from .settings import settings


def _smtp_configured() -> bool:
    return all(
        [
            settings.smtp_host,
            settings.smtp_port,
            settings.smtp_user,
            settings.smtp_password,
            settings.email_from,
            settings.email_to,
        ]
    )


def send_email(subject: str, body: str) -> bool:
    """Send an email if SMTP settings are configured.

    Environment variables:
      - SLC_ENABLE_EMAIL=true
      - SLC_SMTP_HOST / SLC_SMTP_PORT
      - SLC_SMTP_USER / SLC_SMTP_PASSWORD
      - SLC_EMAIL_FROM / SLC_EMAIL_TO
    """
    if not settings.enable_email or not _smtp_configured():
        return False

    msg = MIMEMultipart()
    msg["From"] = settings.email_from
    msg["To"] = settings.email_to
    msg["Subject"] = subject
    msg.attach(MIMEText(body, "plain"))

    try:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10)
        try:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_password)
            server.sendmail(settings.email_from, [settings.email_to], msg.as_string())
        finally:
            server.quit()
        return True
    except (smtplib.SMTPException, OSError) as e:
        db.log_event("WARN", f"Alert email failed: {type(e).__name__}: {e}")
        return False


def alert_health(service: str, version: str, healthy: bool, detail: str) -> bool:
    subject = f"{'RECOVERED' if healthy else 'DOWN'}: {service} {version}"
    body = f"Service: {service}\nVersion: {version}\nStatus: {'UP' if healthy else 'DOWN'}\nDetail: {detail}"
    return send_email(subject, body)


def alert_rollback(service: str, from_version: str, to_version: str, detail: str) -> bool:
    subject = f"ROLLED BACK: {service} {to_version} -> {from_version}"
    body = f"Service: {service}\nAttempted version: {to_version}\nRestored version: {from_version}\nDetail: {detail}"
    return send_email(subject, body)


def alert_backup_failed(job: str, target: str, detail: str) -> bool:
    subject = f"BACKUP FAILED: {job} ({target})"
    body = f"Job: {job}\nTarget: {target}\nDetail: {detail}"
    return send_email(subject, body)
