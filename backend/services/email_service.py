"""Email transport check at startup. Optional: the server runs without it."""

from __future__ import annotations

import logging

import aiosmtplib

from core.config import Settings
from core.errors import ConfigError

logger = logging.getLogger(__name__)

SMTP_VERIFY_TIMEOUT = 10.0


def email_configured(settings: Settings) -> bool:
    return bool(settings.email_user and settings.email_password)


async def initialize_email_service(settings: Settings) -> bool:
    """Verify SMTP credentials. False when email is not configured at all."""
    if not settings.email_user and not settings.email_password:
        return False
    if not email_configured(settings):
        raise ConfigError(
            "Email is half-configured: EMAIL_USER and EMAIL_PASSWORD must both be set.",
            remedy=["Set both variables in .env, or remove both to disable email"],
        )
    if not settings.email_host:
        raise ConfigError(
            "EMAIL_HOST is required when EMAIL_USER/EMAIL_PASSWORD are set.",
            remedy=["Set EMAIL_HOST (e.g. smtp.gmail.com) in .env"],
        )

    smtp = aiosmtplib.SMTP(
        hostname=settings.email_host,
        port=settings.email_port,
        timeout=SMTP_VERIFY_TIMEOUT,
        use_tls=settings.email_port == 465,
    )
    async with smtp:
        await smtp.login(settings.email_user, settings.email_password)
    logger.info("SMTP transport verified (%s:%s)", settings.email_host, settings.email_port)
    return True
