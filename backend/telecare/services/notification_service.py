"""Notification dispatch and the per-user notification inbox.

``NotificationDispatcher`` turns an intent (audience + content + channels)
into one Notification record per recipient and pushes each record through
the external channels. Channel failures are written onto the record and never
fail the whole call. The module-level functions below it back the inbox API.
"""
import asyncio
import math
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from beanie import PydanticObjectId as OID
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from telecare.config import get_settings
from telecare.constants import (
    ALWAYS_HONORED_CATEGORIES,
    EXTERNAL_CHANNELS,
    SMS_RESTRICTED_SENSITIVITY,
    Channel,
    DeliveryState,
    NotificationCategory,
    NotificationStatus,
    Priority,
    Role,
    Sensitivity,
)
from telecare.errors import ChannelError, InvalidField, MissingField, NotFound
from telecare.models import DeviceToken, Notification, NotificationPreferences, QuietHours, RelatedEntity, User
from telecare.schemas import ManualNotificationIn, NotificationPreferencesIn, NotificationTestIn
from telecare.services import credential_store, notification_templates
from telecare.services.channels import ChannelSender, default_senders
from telecare.utils import clock
from telecare.utils.logger import audit, get_logger

settings = get_settings()
logger = get_logger("notifications")

CATEGORY_VALUES = {c.value for c in NotificationCategory}
CHANNEL_VALUES = {c.value for c in Channel}
PREFERENCE_CHANNEL_KEYS = {"email", "sms", "push", "inApp"}

SORT_FIELDS = {
    "createdAt": "created_at",
    "priority": "priority",
    "status": "status",
    "category": "category",
    "readAt": "read_at",
    "scheduledFor": "scheduled_for",
}

STATISTICS_PERIODS = {
    "day": timedelta(days=1),
    "week": timedelta(weeks=1),
    "month": timedelta(days=30),
    "year": timedelta(days=365),
}


# ------------------------ channel selection ------------------------


def normalize_category(key: str) -> str:
    """Map preference keys like ``appointments`` or ``lab_result`` to a category."""
    value = key.strip().lower().replace("_", "-")
    if value in CATEGORY_VALUES:
        return value
    if value.endswith("s") and value[:-1] in CATEGORY_VALUES:
        return value[:-1]
    return value


def preference_key(channel: str) -> str:
    return "inApp" if channel == Channel.IN_APP.value else channel


def channel_allowed(preferences: NotificationPreferences, channel: str, category: str) -> bool:
    key = preference_key(channel)
    if not preferences.channels.get(key, True):
        return False
    for cat, enabled in preferences.categories.get(key, {}).items():
        if normalize_category(cat) == category:
            return enabled
    return True


def effective_channels(
    requested: Iterable[str],
    preferences: NotificationPreferences,
    category: str,
    sensitivity: Sensitivity,
    respect_preferences: bool = True,
) -> List[str]:
    """Channels actually used for one recipient, in delivery order.

    In-app is always present. SMS never carries sensitive content. Security
    and alert categories ignore the recipient's opt-outs.
    """
    wanted = set(requested)
    always = category in {c.value for c in ALWAYS_HONORED_CATEGORIES}
    result = [Channel.IN_APP.value]
    for channel in EXTERNAL_CHANNELS:
        if channel.value not in wanted:
            continue
        if channel == Channel.SMS and sensitivity in SMS_RESTRICTED_SENSITIVITY:
            continue
        if respect_preferences and not always and not channel_allowed(preferences, channel.value, category):
            continue
        result.append(channel.value)
    return result


def validate_channels(channels: Iterable[str]) -> List[str]:
    channels = [c.strip().lower() for c in channels]
    unknown = [c for c in channels if c not in CHANNEL_VALUES]
    if unknown:
        raise InvalidField(f"Unknown channels: {', '.join(unknown)}")
    return channels


def validate_category(category: str) -> str:
    category = normalize_category(category)
    if category not in CATEGORY_VALUES:
        raise InvalidField(f"Unknown notification category: {category}")
    return category


# ------------------------ dispatcher ------------------------


@dataclass
class NotificationIntent:
    title: str
    message: str
    category: str = NotificationCategory.SYSTEM.value
    priority: Priority = Priority.MEDIUM
    sensitivity: Sensitivity = Sensitivity.NORMAL
    channels: List[str] = field(default_factory=lambda: [Channel.IN_APP.value])
    recipient_ids: List[str] = field(default_factory=list)
    recipient_role: Optional[str] = None  # a Role value or "all"
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    related: Optional[RelatedEntity] = None
    action_url: Optional[str] = None
    template_id: Optional[str] = None
    created_by: Optional[OID] = None
    respect_preferences: bool = True


@dataclass
class DeliverySummary:
    total_recipients: int = 0
    records_created: int = 0
    scheduled: int = 0
    sent: Dict[str, int] = field(default_factory=lambda: {c.value: 0 for c in Channel})
    failed: Dict[str, int] = field(default_factory=lambda: {c.value: 0 for c in Channel})
    errors: List[dict] = field(default_factory=list)
    notification_ids: List[str] = field(default_factory=list)
    batch_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "totalRecipients": self.total_recipients,
            "recordsCreated": self.records_created,
            "scheduled": self.scheduled,
            "sent": self.sent,
            "failed": self.failed,
            "errors": self.errors,
            "notificationIds": self.notification_ids,
            "batchId": self.batch_id,
        }


class NotificationDispatcher:
    def __init__(
        self,
        senders: Optional[Dict[str, ChannelSender]] = None,
        timeouts: Optional[Dict[str, float]] = None,
    ):
        self.senders = senders if senders is not None else default_senders()
        self.timeouts = timeouts or {
            Channel.EMAIL.value: settings.EMAIL_TIMEOUT_SECONDS,
            Channel.SMS.value: settings.SMS_TIMEOUT_SECONDS,
            Channel.PUSH.value: settings.PUSH_TIMEOUT_SECONDS,
        }

    async def resolve_audience(self, intent: NotificationIntent) -> tuple[List[User], List[dict]]:
        users: List[User] = []
        errors: List[dict] = []
        if intent.recipient_ids:
            for rid in dict.fromkeys(intent.recipient_ids):
                try:
                    user = await User.get(OID(rid))
                except (InvalidId, TypeError):
                    user = None
                if not user:
                    errors.append({"recipient": rid, "error": "Recipient not found"})
                elif not user.is_active:
                    errors.append({"recipient": rid, "error": "Recipient is inactive"})
                else:
                    users.append(user)
            return users, errors

        if intent.recipient_role:
            query: dict = {"is_active": True}
            if intent.recipient_role != "all":
                try:
                    query["role"] = Role(intent.recipient_role).value
                except ValueError:
                    raise InvalidField(f"Invalid recipient type: {intent.recipient_role}")
            return await User.find(query).to_list(), errors

        raise MissingField("recipientIds or recipientType is required")

    async def notify(self, intent: NotificationIntent) -> DeliverySummary:
        """Create one record per recipient and deliver the unscheduled ones.

        An intent that has already expired is recorded but never sent.
        """
        users, errors = await self.resolve_audience(intent)
        summary = DeliverySummary(total_recipients=len(users) + len(errors), errors=errors)
        is_bulk = len(users) > 1
        if is_bulk:
            summary.batch_id = f"BATCH-{clock.utcnow():%Y%m%d%H%M%S}-{secrets.token_hex(3)}"

        now = clock.utcnow()
        scheduled_for = clock.as_utc(intent.scheduled_for)
        deferred = scheduled_for is not None and scheduled_for > now
        expires_at = clock.as_utc(intent.expires_at)
        expired = expires_at is not None and expires_at <= now

        for user in users:
            try:
                channels = effective_channels(
                    intent.channels,
                    user.notification_preferences,
                    intent.category,
                    intent.sensitivity,
                    respect_preferences=intent.respect_preferences,
                )
                notification = Notification(
                    recipient_id=user.id,
                    recipient_role=user.role.value,
                    title=intent.title,
                    message=intent.message,
                    category=intent.category,
                    priority=intent.priority,
                    sensitivity=intent.sensitivity,
                    channels=channels,
                    scheduled_for=scheduled_for,
                    expires_at=expires_at,
                    related=intent.related,
                    action_url=intent.action_url,
                    template_id=intent.template_id,
                    batch_id=summary.batch_id,
                    is_bulk=is_bulk,
                    created_by=intent.created_by,
                    max_retries=settings.NOTIFICATION_MAX_RETRIES,
                )
                if not deferred and not expired:
                    self._mark_in_app_delivered(notification)
                await notification.insert()
                summary.records_created += 1
                summary.notification_ids.append(str(notification.id))

                if deferred:
                    summary.scheduled += 1
                    continue
                if expired:
                    summary.errors.append(
                        {"recipient": str(user.id), "error": "Notification expired before delivery"}
                    )
                    continue
                summary.sent[Channel.IN_APP.value] += 1
                results = await self.deliver(notification, user, self._external(channels))
                for channel, error in results.items():
                    if error is None:
                        summary.sent[channel] += 1
                    else:
                        summary.failed[channel] += 1
                        summary.errors.append({"recipient": str(user.id), "channel": channel, "error": error})
            except Exception as e:
                # One bad recipient must not sink the batch
                logger.exception(f"Notification for user {user.id} failed")
                summary.errors.append({"recipient": str(user.id), "error": str(e) or e.__class__.__name__})

        audit(
            "notification_dispatched",
            category=intent.category,
            recipients=len(users),
            created=summary.records_created,
            scheduled=summary.scheduled,
            errors=len(summary.errors),
        )
        return summary

    @staticmethod
    def _external(channels: Iterable[str]) -> List[str]:
        wanted = set(channels)
        return [c.value for c in EXTERNAL_CHANNELS if c.value in wanted]

    @staticmethod
    def _mark_in_app_delivered(notification: Notification) -> None:
        now = clock.utcnow()
        notification.delivery_status.in_app.state = DeliveryState.DELIVERED
        notification.delivery_status.in_app.updated_at = now
        if notification.sent_at is None:
            notification.sent_at = now

    async def _send_one(self, channel: str, user: User, notification: Notification) -> Optional[str]:
        """Returns None on success or the error text."""
        sender = self.senders.get(channel)
        if sender is None:
            return f"No sender configured for {channel}"
        try:
            await asyncio.wait_for(sender.send(user, notification), timeout=self.timeouts.get(channel, 10.0))
        except asyncio.TimeoutError:
            return f"{channel} delivery timed out"
        except ChannelError as e:
            return str(e) or f"{channel} delivery failed"
        except Exception as e:
            logger.exception(f"Unexpected {channel} sender error for notification {notification.id}")
            return str(e) or e.__class__.__name__
        return None

    async def deliver(self, notification: Notification, user: User, channels: Iterable[str]) -> Dict[str, Optional[str]]:
        """One delivery round over ``channels`` (email, sms, push order)."""
        if is_expired(notification, clock.utcnow()):
            logger.info(f"Notification {notification.id} has expired; delivery skipped")
            return {}
        results: Dict[str, Optional[str]] = {}
        for channel in self._external(channels):
            error = await self._send_one(channel, user, notification)
            state = notification.delivery_status.for_channel(channel)
            state.updated_at = clock.utcnow()
            if error is None:
                state.state = DeliveryState.DELIVERED
                state.error = None
            else:
                state.state = DeliveryState.FAILED
                state.error = error
                logger.warning(f"{channel} delivery failed for notification {notification.id}: {error}")
            results[channel] = error

        now = clock.utcnow()
        failures = {c: e for c, e in results.items() if e is not None}
        succeeded = not results or len(failures) < len(results)
        if failures:
            notification.retry_count += 1
            notification.last_retry_at = now
            notification.failure_reason = "; ".join(f"{c}: {e}" for c, e in failures.items())
        elif not notification.has_failed_channel():
            notification.failure_reason = None

        if notification.status in (NotificationStatus.PENDING, NotificationStatus.FAILED):
            notification.status = NotificationStatus.SENT if succeeded else NotificationStatus.FAILED
        if succeeded and notification.sent_at is None:
            notification.sent_at = now
        notification.updated_at = now
        await notification.save()
        return results

    async def deliver_due(self) -> int:
        """Deliver scheduled records whose time has come."""
        now = clock.utcnow()
        due = await Notification.find(
            {
                "status": NotificationStatus.PENDING.value,
                "is_archived": False,
                "scheduled_for": {"$ne": None, "$lte": now},
            }
        ).to_list()
        delivered = 0
        for notification in due:
            if is_expired(notification, now):
                continue
            user = await User.get(notification.recipient_id)
            if not user or not user.is_active:
                continue
            self._mark_in_app_delivered(notification)
            await self.deliver(notification, user, notification.channels)
            delivered += 1
        return delivered

    async def retry(self, notification: Notification) -> Dict[str, Optional[str]]:
        failed = [
            c for c in self._external(notification.channels)
            if notification.delivery_status.for_channel(c).state == DeliveryState.FAILED
        ]
        user = await User.get(notification.recipient_id)
        if not user or not user.is_active:
            return {}
        return await self.deliver(notification, user, failed)

    async def retry_failed(self, limit: int = 100) -> int:
        """Re-attempt the failed channels of every retry-eligible record."""
        retried = 0
        for notification in await retry_eligible(limit=limit):
            if await self.retry(notification):
                retried += 1
        return retried


_dispatcher: NotificationDispatcher | None = None


def get_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def set_dispatcher(dispatcher: NotificationDispatcher | None) -> None:
    global _dispatcher
    _dispatcher = dispatcher


# ------------------------ retry eligibility ------------------------


def is_expired(notification: Notification, now: datetime) -> bool:
    expires_at = clock.as_utc(notification.expires_at)
    return expires_at is not None and expires_at <= now


def is_retry_eligible(notification: Notification, now: datetime) -> bool:
    if notification.is_archived:
        return False
    if notification.status != NotificationStatus.FAILED and not notification.has_failed_channel():
        return False
    # Compared against the record's own limit
    if notification.retry_count >= notification.max_retries:
        return False
    if is_expired(notification, now):
        return False
    last = clock.as_utc(notification.last_retry_at)
    backoff = timedelta(minutes=settings.NOTIFICATION_RETRY_BACKOFF_MINUTES)
    return last is None or now - last >= backoff


async def retry_eligible(limit: int = 100) -> List[Notification]:
    now = clock.utcnow()
    failed_state = DeliveryState.FAILED.value
    candidates = await Notification.find(
        {
            "is_archived": False,
            "$or": [
                {"status": NotificationStatus.FAILED.value},
                {"delivery_status.email.state": failed_state},
                {"delivery_status.sms.state": failed_state},
                {"delivery_status.push.state": failed_state},
            ],
        }
    ).sort("+last_retry_at").to_list()
    return [n for n in candidates if is_retry_eligible(n, now)][:limit]


# ------------------------ inbox ------------------------


def _visible_query(user: User, include_expired: bool = False) -> dict:
    now = clock.utcnow()
    clauses: List[dict] = [
        {"recipient_id": user.id},
        {"is_archived": False},
        {"$or": [{"scheduled_for": None}, {"scheduled_for": {"$lte": now}}]},
    ]
    if not include_expired:
        clauses.append({"$or": [{"expires_at": None}, {"expires_at": {"$gt": now}}]})
    return {"$and": clauses}


async def list_notifications(
    user: User,
    *,
    category: Optional[str] = None,
    status: Optional[str] = None,
    priority: Optional[str] = None,
    is_read: Optional[bool] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "createdAt",
    sort_order: str = "desc",
    include_expired: bool = False,
) -> dict:
    base = _visible_query(user, include_expired)
    query = {"$and": list(base["$and"])}
    if category:
        query["$and"].append({"category": normalize_category(category)})
    if status:
        query["$and"].append({"status": status})
    if priority:
        query["$and"].append({"priority": priority})
    if is_read is not None:
        query["$and"].append({"is_read": is_read})
    if date_from:
        query["$and"].append({"created_at": {"$gte": date_from}})
    if date_to:
        query["$and"].append({"created_at": {"$lte": date_to}})

    sort_field = SORT_FIELDS.get(sort_by)
    if not sort_field:
        raise InvalidField(f"Cannot sort by {sort_by}")
    direction = "+" if sort_order.lower() == "asc" else "-"

    total = await Notification.find(query).count()
    items = (
        await Notification.find(query)
        .sort(f"{direction}{sort_field}")
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list()
    )
    visible_total = await Notification.find(base).count()
    unread = await Notification.find({"$and": base["$and"] + [{"is_read": False}]}).count()
    return {
        "notifications": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit) if total else 0,
            "hasNext": page * limit < total,
            "hasPrev": page > 1,
        },
        "summary": {"total": visible_total, "unread": unread, "read": visible_total - unread},
    }


async def unread_count(user: User) -> int:
    base = _visible_query(user)
    return await Notification.find({"$and": base["$and"] + [{"is_read": False}]}).count()


async def list_unread(user: User, limit: int = 20) -> List[Notification]:
    base = _visible_query(user)
    return (
        await Notification.find({"$and": base["$and"] + [{"is_read": False}]})
        .sort("-created_at")
        .limit(limit)
        .to_list()
    )


def _is_visible(notification: Notification, now: datetime) -> bool:
    """Same rules as the inbox: due and not expired."""
    scheduled_for = clock.as_utc(notification.scheduled_for)
    if scheduled_for is not None and scheduled_for > now:
        return False
    return not is_expired(notification, now)


async def get_notification(user: User, notification_id: str, *, owner_only: bool = False) -> Notification:
    """Owner's visible notification; admins may inspect anyone else's. Others get 404."""
    try:
        notification = await Notification.get(OID(notification_id))
    except (InvalidId, TypeError):
        notification = None
    if not notification or notification.is_archived:
        raise NotFound("Notification not found")
    is_owner = notification.recipient_id == user.id
    if not is_owner and (owner_only or user.role != Role.ADMIN):
        raise NotFound("Notification not found")
    if is_owner and not _is_visible(notification, clock.utcnow()):
        raise NotFound("Notification not found")
    return notification


async def mark_read(user: User, notification_id: str) -> Notification:
    """Idempotent; a second call leaves readAt unchanged."""
    notification = await get_notification(user, notification_id, owner_only=True)
    if notification.is_read:
        return notification
    now = clock.utcnow()
    notification.is_read = True
    notification.read_at = now
    notification.status = NotificationStatus.READ
    notification.delivery_status.in_app.opened = True
    notification.updated_at = now
    await notification.save()
    return notification


async def mark_all_read(user: User) -> int:
    now = clock.utcnow()
    base = _visible_query(user)
    result = await Notification.get_motor_collection().update_many(
        {"$and": base["$and"] + [{"is_read": False}]},
        {
            "$set": {
                "is_read": True,
                "read_at": now,
                "status": NotificationStatus.READ.value,
                "delivery_status.in_app.opened": True,
                "updated_at": now,
            }
        },
    )
    return result.modified_count


async def archive(user: User, notification_id: str) -> None:
    """Delete from the user's point of view; the record is kept."""
    notification = await get_notification(user, notification_id, owner_only=True)
    now = clock.utcnow()
    notification.is_archived = True
    notification.archived_at = now
    notification.updated_at = now
    await notification.save()


async def clear_all(user: User) -> int:
    now = clock.utcnow()
    result = await Notification.get_motor_collection().update_many(
        {"recipient_id": user.id, "is_archived": False},
        {"$set": {"is_archived": True, "archived_at": now, "updated_at": now}},
    )
    return result.modified_count


# ------------------------ preferences ------------------------


def preferences_out(preferences: NotificationPreferences) -> dict:
    return {
        "channels": dict(preferences.channels),
        "categories": {k: dict(v) for k, v in preferences.categories.items()},
        "frequency": preferences.frequency,
        "quietHours": preferences.quiet_hours.model_dump(),
    }


async def get_preferences(user: User) -> dict:
    return preferences_out(user.notification_preferences)


async def update_preferences(user: User, payload: NotificationPreferencesIn) -> dict:
    """Merge key by key; anything not mentioned keeps its value."""
    prefs = user.notification_preferences.model_copy(deep=True)
    if payload.channels:
        unknown = set(payload.channels) - PREFERENCE_CHANNEL_KEYS
        if unknown:
            raise InvalidField(f"Unknown preference channels: {', '.join(sorted(unknown))}")
        prefs.channels.update(payload.channels)
    if payload.categories:
        for channel, categories in payload.categories.items():
            if channel not in PREFERENCE_CHANNEL_KEYS:
                raise InvalidField(f"Unknown preference channel: {channel}")
            current = prefs.categories.setdefault(channel, {})
            for category, enabled in categories.items():
                current[validate_category(category)] = enabled
    if payload.frequency:
        prefs.frequency = payload.frequency
    if payload.quiet_hours:
        merged = prefs.quiet_hours.model_dump()
        merged.update(payload.quiet_hours.model_dump(exclude_none=True))
        prefs.quiet_hours = QuietHours(**merged)

    await credential_store.update_fields(user, notification_preferences=prefs)
    audit("notification_preferences_updated", user_id=user.id)
    return preferences_out(prefs)


# ------------------------ operator tools ------------------------


async def send_test(user: User, payload: NotificationTestIn, dispatcher: NotificationDispatcher) -> Notification:
    """Send a test message to the caller over one channel, ignoring opt-outs."""
    channel = validate_channels([payload.channel])[0]
    intent = NotificationIntent(
        title=payload.title or "Test notification",
        message=payload.message or "This is a test notification.",
        category=validate_category(payload.category),
        priority=Priority.LOW,
        channels=[channel],
        recipient_ids=[str(user.id)],
        created_by=user.id,
        respect_preferences=False,
    )
    summary = await dispatcher.notify(intent)
    if not summary.notification_ids:
        error = summary.errors[0]["error"] if summary.errors else "not created"
        raise InvalidField(f"Test notification failed: {error}")
    notification = await Notification.get(OID(summary.notification_ids[0]))
    state = notification.delivery_status.for_channel(channel)
    if state.state == DeliveryState.FAILED:
        raise InvalidField(f"Test notification failed: {state.error}")
    return notification


def intent_from_manual(payload: ManualNotificationIn, admin: User) -> NotificationIntent:
    title, message = payload.title, payload.message
    category, priority = payload.category, payload.priority
    channels = payload.channels
    if payload.template_id:
        template = notification_templates.get_template(payload.template_id)
        rendered_title, rendered_message = template.render(payload.variables)
        title = title or rendered_title
        message = message or rendered_message
        category = category or template.category
        if "priority" not in payload.model_fields_set:
            priority = Priority(template.priority)
        if "channels" not in payload.model_fields_set:
            channels = template.channels
    if not title or not title.strip() or not message or not message.strip():
        raise MissingField("title and message are required")

    related = None
    if payload.related_entity:
        related = RelatedEntity(
            entity_type=payload.related_entity.entity_type,
            entity_id=payload.related_entity.entity_id,
        )
    return NotificationIntent(
        title=title.strip(),
        message=message.strip(),
        category=validate_category(category or NotificationCategory.SYSTEM.value),
        priority=priority,
        sensitivity=payload.sensitivity,
        channels=validate_channels(channels),
        recipient_ids=payload.recipient_ids or [],
        recipient_role=payload.recipient_type,
        scheduled_for=payload.scheduled_for,
        expires_at=payload.expires_at,
        related=related,
        action_url=payload.action_url,
        template_id=payload.template_id,
        created_by=admin.id,
    )


async def retry_notification(notification_id: str, dispatcher: NotificationDispatcher) -> Notification:
    """Admin-triggered retry; skips the backoff wait but not the retry limit."""
    try:
        notification = await Notification.get(OID(notification_id))
    except (InvalidId, TypeError):
        notification = None
    if not notification:
        raise NotFound("Notification not found")
    if is_expired(notification, clock.utcnow()):
        raise InvalidField("Notification has expired")
    if not notification.has_failed_channel():
        raise InvalidField("Notification has no failed channels")
    if notification.retry_count >= notification.max_retries:
        raise InvalidField("Maximum retries reached")
    await dispatcher.retry(notification)
    return notification


async def _group_counts(field_name: str, match: dict) -> Dict[str, int]:
    rows = await Notification.aggregate(
        [{"$match": match}, {"$group": {"_id": f"${field_name}", "count": {"$sum": 1}}}]
    ).to_list()
    return {str(getattr(r["_id"], "value", r["_id"])): r["count"] for r in rows if r["_id"] is not None}


async def statistics(
    period: str = "month",
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> dict:
    """Admin dashboard numbers for ``day|week|month|year|all``.

    An explicit ``start_date``/``end_date`` range overrides the period.
    """
    match: dict = {}
    since = None
    start_date, end_date = clock.as_utc(start_date), clock.as_utc(end_date)
    if start_date or end_date:
        if start_date and end_date and start_date > end_date:
            raise InvalidField("startDate must be before endDate")
        period = "custom"
        since = start_date
        created: dict = {}
        if start_date:
            created["$gte"] = start_date
        if end_date:
            created["$lte"] = end_date
        match["created_at"] = created
    elif period != "all":
        if period not in STATISTICS_PERIODS:
            raise InvalidField("period must be one of day, week, month, year, all")
        since = clock.utcnow() - STATISTICS_PERIODS[period]
        match["created_at"] = {"$gte": since}

    total = await Notification.find(match).count()
    read = await Notification.find({**match, "is_read": True}).count()
    delivered = {}
    failed = {}
    for channel in Channel:
        path = f"delivery_status.{'in_app' if channel == Channel.IN_APP else channel.value}.state"
        delivered[channel.value] = await Notification.find({**match, path: DeliveryState.DELIVERED.value}).count()
        failed[channel.value] = await Notification.find({**match, path: DeliveryState.FAILED.value}).count()

    return {
        "period": period,
        "since": since.isoformat() if since else None,
        "total": total,
        "read": read,
        "unread": total - read,
        "readRate": round(read / total * 100, 2) if total else 0.0,
        "byCategory": await _group_counts("category", match),
        "byStatus": await _group_counts("status", match),
        "byPriority": await _group_counts("priority", match),
        "deliveredByChannel": delivered,
        "failedByChannel": failed,
        "retryEligible": len(await retry_eligible(limit=10_000)),
    }


# ------------------------ devices ------------------------


async def register_device_token(*, user: User, token: str, platform: Optional[str]) -> DeviceToken:
    """Save or update an FCM device token for the user."""
    existing = await DeviceToken.find_one(DeviceToken.token == token)
    now = clock.utcnow()
    if existing:
        existing.user_id = user.id
        existing.platform = platform
        existing.active = True
        existing.updated_at = now
        await existing.save()
        return existing
    device = DeviceToken(user_id=user.id, token=token, platform=platform)
    try:
        await device.insert()
    except DuplicateKeyError:
        # Registered concurrently; take it over
        device = await DeviceToken.find_one(DeviceToken.token == token)
        device.user_id = user.id
        device.platform = platform
        device.active = True
        await device.save()
    return device
