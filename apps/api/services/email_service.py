"""
Email Service
Outbound mail over SMTP. Without SMTP_HOST the message is only logged.
"""

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from starlette.concurrency import run_in_threadpool

from config import get_settings

logger = logging.getLogger(__name__)


def _send_smtp(to: str, subject: str, html_content: str, text_content: str) -> None:
    settings = get_settings()

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.email_from
    msg["To"] = to
    msg.attach(MIMEText(text_content, "plain"))
    msg.attach(MIMEText(html_content, "html"))

    if settings.smtp_secure:
        context = ssl.create_default_context()
        server = smtplib.SMTP_SSL(settings.smtp_host, settings.smtp_port, context=context, timeout=30)
    else:
        server = smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=30)
        server.starttls(context=ssl.create_default_context())

    try:
        if settings.smtp_user:
            server.login(settings.smtp_user, settings.smtp_pass or "")
        server.sendmail(settings.email_from, [to], msg.as_string())
    finally:
        server.quit()


async def send_email(to: str, subject: str, html_content: str, text_content: str) -> bool:
    """Send a message; failures are logged and reported as False"""
    settings = get_settings()
    if not settings.smtp_host:
        logger.info(f"[SIMULATED EMAIL] To: {to} | Subject: {subject} | {text_content}")
        return True

    try:
        await run_in_threadpool(_send_smtp, to, subject, html_content, text_content)
        logger.info(f"Email '{subject}' sent to {to}")
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email '{subject}' to {to}: {e}")
        return False


async def send_password_reset_email(to: str, name: str, token: str) -> bool:
    reset_url = f"{get_settings().frontend_url}/reset-password?token={token}"
    subject = "Password reset request"
    text_content = (
        f"Hello {name},\n\n"
        f"Use the link below to reset your password. It expires in one hour.\n{reset_url}\n\n"
        "If you did not request a reset, ignore this email."
    )
    html_content = (
        f"<p>Hello {name},</p>"
        f"<p>Use the link below to reset your password. It expires in one hour.</p>"
        f'<p><a href="{reset_url}">Reset password</a></p>'
        "<p>If you did not request a reset, ignore this email.</p>"
    )
    return await send_email(to, subject, html_content, text_content)
