import httpx

from telecare.config import get_settings
from telecare.errors import ChannelError
from telecare.utils.logger import get_logger

settings = get_settings()
logger = get_logger("sms")

TWILIO_MESSAGES_URL = "https://api.twilio.com/2010-04-01/Accounts/{sid}/Messages.json"


class SMSError(ChannelError):
    pass


def _mask(phone: str) -> str:
    return f"***{phone[-4:]}" if len(phone) > 4 else "***"


async def _send_twilio(phone: str, message: str) -> None:
    if not (settings.TWILIO_ACCOUNT_SID and settings.TWILIO_AUTH_TOKEN and settings.TWILIO_FROM_NUMBER):
        raise SMSError("Twilio configuration is missing (TWILIO_ACCOUNT_SID/TWILIO_AUTH_TOKEN/TWILIO_FROM_NUMBER)")
    url = TWILIO_MESSAGES_URL.format(sid=settings.TWILIO_ACCOUNT_SID)
    data = {"To": phone, "From": settings.TWILIO_FROM_NUMBER, "Body": message}
    try:
        async with httpx.AsyncClient(timeout=settings.SMS_TIMEOUT_SECONDS) as client:
            resp = await client.post(
                url,
                data=data,
                auth=(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN),
            )
    except httpx.HTTPError as e:
        raise SMSError(f"Twilio request failed: {e}")
    if resp.status_code >= 400:
        raise SMSError(f"Twilio error {resp.status_code}: {resp.text}")


async def send_sms(phone: str, message: str) -> None:
    """Send an SMS through the configured provider.

    The ``dummy`` provider only logs, which is what development runs use.
    """
    if settings.SMS_PROVIDER == "twilio":
        await _send_twilio(phone, message)
        logger.info(f"[SMS] sent to {_mask(phone)}")
        return
    logger.info(f"[SMS:DUMMY] {_mask(phone)} => {message}")
