from beanie import Document, Indexed
from beanie import PydanticObjectId as OID
from pydantic import BaseModel, Field, model_validator
from pymongo import ASCENDING, DESCENDING, IndexModel
from datetime import datetime
from telecare.constants import (
    Channel,
    DeliveryState,
    NotificationStatus,
    Priority,
    Sensitivity,
)
from telecare.utils import clock

SHORT_MESSAGE_LENGTH = 150


class DeviceToken(Document):
    """FCM device token per user and device."""
    user_id: Indexed(OID)
    token: Indexed(str, unique=True)
    platform: str | None = None  # ios|android|web
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: clock.utcnow())
    updated_at: datetime = Field(default_factory=lambda: clock.utcnow())

    class Settings:
        name = "device_tokens"


class ChannelDelivery(BaseModel):
    state: DeliveryState = DeliveryState.NOT_SENT
    error: str | None = None
    opened: bool = False
    updated_at: datetime | None = None

    @property
    def sent(self) -> bool:
        return self.state in (DeliveryState.SENT, DeliveryState.DELIVERED)

    @property
    def delivered(self) -> bool:
        return self.state == DeliveryState.DELIVERED


class DeliveryStatus(BaseModel):
    email: ChannelDelivery = Field(default_factory=ChannelDelivery)
    sms: ChannelDelivery = Field(default_factory=ChannelDelivery)
    push: ChannelDelivery = Field(default_factory=ChannelDelivery)
    in_app: ChannelDelivery = Field(default_factory=ChannelDelivery)

    def for_channel(self, channel: str) -> ChannelDelivery:
        return getattr(self, delivery_field(channel))


def delivery_field(channel: str) -> str:
    """Attribute name under DeliveryStatus for a channel value."""
    return "in_app" if channel == Channel.IN_APP.value else channel


class RelatedEntity(BaseModel):
    entity_type: str
    entity_id: str


def shorten(message: str) -> str:
    if len(message) <= SHORT_MESSAGE_LENGTH:
        return message
    return message[: SHORT_MESSAGE_LENGTH - 3] + "..."


class Notification(Document):
    """One delivery record per recipient."""
    recipient_id: Indexed(OID)
    recipient_role: str | None = None
    title: str
    message: str
    short_message: str | None = None
    category: str
    priority: Priority = Priority.MEDIUM
    sensitivity: Sensitivity = Sensitivity.NORMAL
    channels: list[str] = Field(default_factory=lambda: [Channel.IN_APP.value])
    delivery_status: DeliveryStatus = Field(default_factory=DeliveryStatus)
    status: NotificationStatus = NotificationStatus.PENDING

    is_read: bool = False
    read_at: datetime | None = None

    scheduled_for: datetime | None = None
    sent_at: datetime | None = None
    expires_at: datetime | None = None

    retry_count: int = 0
    max_retries: int = 3
    last_retry_at: datetime | None = None
    failure_reason: str | None = None

    related: RelatedEntity | None = None
    action_url: str | None = None
    template_id: str | None = None
    batch_id: str | None = None
    is_bulk: bool = False
    created_by: OID | None = None

    is_archived: bool = False
    archived_at: datetime | None = None

    created_at: datetime = Field(default_factory=lambda: clock.utcnow())
    updated_at: datetime = Field(default_factory=lambda: clock.utcnow())

    @model_validator(mode="after")
    def _fill_short_message(self):
        if self.short_message is None:
            self.short_message = shorten(self.message)
        return self

    def has_failed_channel(self) -> bool:
        return any(
            self.delivery_status.for_channel(ch).state == DeliveryState.FAILED
            for ch in self.channels
        )

    class Settings:
        name = "notifications"
        indexes = [
            IndexModel(
                [("recipient_id", ASCENDING), ("is_read", ASCENDING), ("created_at", DESCENDING)],
                name="recipient_unread",
            ),
            IndexModel([("status", ASCENDING), ("scheduled_for", ASCENDING)], name="status_schedule"),
        ]
