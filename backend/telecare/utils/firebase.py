import asyncio
from typing import Dict, List, Optional

from telecare.config import get_settings
from telecare.errors import ChannelError
from telecare.utils.logger import get_logger

settings = get_settings()
logger = get_logger("fcm")

_firebase_ready = False


def init_firebase() -> bool:
    """Initialise the Admin SDK once; stay in no-op mode without credentials."""
    global _firebase_ready
    if _firebase_ready or not settings.FIREBASE_CREDENTIALS_FILE:
        return _firebase_ready
    try:
        import firebase_admin
        from firebase_admin import credentials

        if not firebase_admin._apps:
            cred = credentials.Certificate(settings.FIREBASE_CREDENTIALS_FILE)
            firebase_admin.initialize_app(cred)
        _firebase_ready = True
    except (ValueError, OSError) as e:
        logger.error(f"Firebase init failed: {e}")
        _firebase_ready = False
    return _firebase_ready


class PushError(ChannelError):
    pass


async def send_push(
    tokens: List[str],
    title: str,
    body: str,
    data: Optional[Dict[str, str]] = None,
) -> int:
    """Send a multicast FCM message and return the number of devices reached.

    Raises PushError when every device rejects the message.
    """
    if not init_firebase():
        logger.info(f"[FCM:SKIP] title={title} tokens={len(tokens)}")
        return len(tokens)

    from firebase_admin import exceptions as fb_exceptions
    from firebase_admin import messaging

    message = messaging.MulticastMessage(
        notification=messaging.Notification(title=title, body=body),
        data=data or {},
        tokens=tokens,
    )
    try:
        response = await asyncio.wait_for(
            asyncio.to_thread(messaging.send_each_for_multicast, message),
            timeout=settings.PUSH_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        raise PushError("Push send timed out")
    except fb_exceptions.FirebaseError as e:
        raise PushError(f"Push send failed: {e}")
    logger.info(f"[FCM] Sent: success={response.success_count} failure={response.failure_count}")
    if response.success_count == 0:
        errors = {str(r.exception) for r in response.responses if r.exception}
        raise PushError(f"Push rejected by all devices: {'; '.join(sorted(errors)) or 'unknown error'}")
    return response.success_count
