"""Transactional emails for account flows. Run as background tasks."""
from telecare.config import get_settings
from telecare.errors import ChannelError
from telecare.models.user import User
from telecare.utils import email_templates
from telecare.utils.email import get_email_gateway
from telecare.utils.logger import get_logger, redact_email

settings = get_settings()
logger = get_logger("account_emails")


async def _deliver(user: User, rendered: email_templates.RenderedEmail, kind: str) -> bool:
    try:
        await get_email_gateway().send(user.email, rendered.subject, rendered.html, rendered.text)
        return True
    except ChannelError as e:
        logger.error(f"{kind} email to {redact_email(user.email)} failed: {e}")
        return False


async def send_verification_email(user: User, token: str) -> bool:
    rendered = email_templates.VERIFY_EMAIL.render(
        url=email_templates.frontend_url(f"verify-email?token={token}"),
        first_name=user.first_name,
        hours=settings.EMAIL_VERIFY_TOKEN_EXPIRE_HOURS,
    )
    return await _deliver(user, rendered, "Verification")


async def send_password_reset_email(user: User, token: str) -> bool:
    rendered = email_templates.PASSWORD_RESET.render(
        url=email_templates.frontend_url(f"reset-password?token={token}"),
        first_name=user.first_name,
        minutes=settings.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES,
    )
    return await _deliver(user, rendered, "Password reset")


async def send_welcome_email(user: User) -> bool:
    rendered = email_templates.WELCOME.render(
        url=email_templates.frontend_url("login"),
        first_name=user.first_name,
        role=user.role.value,
    )
    return await _deliver(user, rendered, "Welcome")
