from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage

from portal.config import EMAIL_FROM, SMTP_HOST, SMTP_PASSWORD, SMTP_PORT, SMTP_USER

logger = logging.getLogger(__name__)


class MailError(Exception):
    pass


def send_verification_code(to: str, code: str) -> None:
    """Mail a signup verification code. Without SMTP_HOST the code is only logged."""
    if not SMTP_HOST:
        logger.warning("SMTP not configured; verification code for %s is %s", to, code)
        return

    msg = EmailMessage()
    msg["From"] = EMAIL_FROM or SMTP_USER
    msg["To"] = to
    msg["Subject"] = "Your Verification Code"
    msg.set_content(f"Your verification code is: {code}")

    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT, timeout=15) as smtp:
            smtp.starttls()
            if SMTP_USER:
                smtp.login(SMTP_USER, SMTP_PASSWORD)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError) as exc:
        raise MailError(str(exc)) from exc
    logger.info("Verification email sent to %s", to)
