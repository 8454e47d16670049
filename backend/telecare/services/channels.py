"""Per-channel senders used by the notification dispatcher.

A sender delivers one notification to one user and raises ChannelError when
the channel cannot take it.
"""
from typing import Protocol

from telecare.constants import Channel
from telecare.errors import ChannelError
from telecare.models import DeviceToken, Notification, User
from telecare.utils import email_templates
from telecare.utils.email import get_email_gateway
from telecare.utils.firebase import send_push
from telecare.utils.sms import send_sms


class ChannelSender(Protocol):
    async def send(self, user: User, notification: Notification) -> None: ...


class EmailChannel:
    async def send(self, user: User, notification: Notification) -> None:
        url = notification.action_url or email_templates.frontend_url("notifications")
        rendered = email_templates.NOTIFICATION.render(
            url=url,
            color=email_templates.CATEGORY_COLORS.get(notification.category, email_templates.DEFAULT_COLOR),
            first_name=user.first_name,
            title=notification.title,
            message=notification.message,
        )
        await get_email_gateway().send(user.email, rendered.subject, rendered.html, rendered.text)


class SmsChannel:
    async def send(self, user: User, notification: Notification) -> None:
        if not user.phone:
            raise ChannelError("No phone number on file")
        await send_sms(user.phone, f"{notification.title}: {notification.short_message}")


class PushChannel:
    async def send(self, user: User, notification: Notification) -> None:
        devices = await DeviceToken.find(
            DeviceToken.user_id == user.id, DeviceToken.active == True
        ).to_list()
        if not devices:
            raise ChannelError("No registered devices")
        await send_push(
            [d.token for d in devices],
            notification.title,
            notification.short_message or notification.message,
            data={"notificationId": str(notification.id), "category": notification.category},
        )


def default_senders() -> dict[str, ChannelSender]:
    return {
        Channel.EMAIL.value: EmailChannel(),
        Channel.SMS.value: SmsChannel(),
        Channel.PUSH.value: PushChannel(),
    }
