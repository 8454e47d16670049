"""Periodic notification jobs run by the scheduler in ``main``."""
from telecare.services.notification_service import get_dispatcher
from telecare.utils.logger import get_logger

logger = get_logger("notification_jobs")


async def deliver_scheduled_notifications():
    """Deliver records whose scheduledFor has passed."""
    try:
        count = await get_dispatcher().deliver_due()
        if count:
            logger.info(f"Delivered {count} scheduled notifications")
    except Exception as e:
        logger.error(f"Scheduled notification job failed: {e}", exc_info=True)


async def retry_failed_notifications():
    """Re-attempt failed channels once the backoff has passed."""
    try:
        count = await get_dispatcher().retry_failed()
        if count:
            logger.info(f"Retried {count} failed notifications")
    except Exception as e:
        logger.error(f"Notification retry job failed: {e}", exc_info=True)
