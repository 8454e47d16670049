from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from telecare.constants import Role
from telecare.models.user import User
from telecare.responses import api_response
from telecare.schemas import (
    DeviceTokenIn,
    ManualNotificationIn,
    NotificationPreferencesIn,
    NotificationTestIn,
    dump,
    notification_out,
)
from telecare.security import get_current_user, require_roles
from telecare.services import notification_service, notification_templates
from telecare.services.notification_service import NotificationDispatcher, get_dispatcher

router = APIRouter(prefix="/notifications", tags=["notifications"])
admin_only = require_roles([Role.ADMIN])


def dispatcher_dep() -> NotificationDispatcher:
    return get_dispatcher()


@router.get("")
async def route_list_notifications(
    category: Optional[str] = Query(None, alias="type"),
    notification_status: Optional[str] = Query(None, alias="status"),
    priority: Optional[str] = None,
    is_read: Optional[bool] = Query(None, alias="isRead"),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    sort_by: str = Query("createdAt", alias="sortBy"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    include_expired: bool = Query(False, alias="includeExpired"),
    current_user: User = Depends(get_current_user),
):
    result = await notification_service.list_notifications(
        current_user,
        category=category,
        status=notification_status,
        priority=priority,
        is_read=is_read,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
        include_expired=include_expired,
    )
    result["notifications"] = [dump(notification_out(n)) for n in result["notifications"]]
    return api_response(result, "Notifications retrieved")


@router.get("/unread")
async def route_unread(
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
):
    items = await notification_service.list_unread(current_user, limit=limit)
    return api_response({"notifications": [dump(notification_out(n)) for n in items]}, "Unread notifications")


@router.get("/unread-count")
async def route_unread_count(current_user: User = Depends(get_current_user)):
    count = await notification_service.unread_count(current_user)
    return api_response({"count": count}, "Unread count")


@router.patch("/mark-all-read")
async def route_mark_all_read(current_user: User = Depends(get_current_user)):
    updated = await notification_service.mark_all_read(current_user)
    return api_response({"updated": updated}, "All notifications marked as read")


@router.delete("/clear-all")
async def route_clear_all(current_user: User = Depends(get_current_user)):
    cleared = await notification_service.clear_all(current_user)
    return api_response({"cleared": cleared}, "All notifications cleared")


@router.get("/preferences")
async def route_get_preferences(current_user: User = Depends(get_current_user)):
    return api_response(await notification_service.get_preferences(current_user), "Preferences retrieved")


@router.patch("/preferences")
async def route_update_preferences(
    payload: NotificationPreferencesIn,
    current_user: User = Depends(get_current_user),
):
    prefs = await notification_service.update_preferences(current_user, payload)
    return api_response(prefs, "Preferences updated")


@router.post("/register-device")
async def route_register_device(payload: DeviceTokenIn, current_user: User = Depends(get_current_user)):
    device = await notification_service.register_device_token(
        user=current_user, token=payload.token, platform=payload.platform
    )
    return api_response({"id": str(device.id), "platform": device.platform}, "Device registered")


@router.post("/test")
async def route_test_notification(
    payload: NotificationTestIn,
    current_user: User = Depends(get_current_user),
    dispatcher: NotificationDispatcher = Depends(dispatcher_dep),
):
    notification = await notification_service.send_test(current_user, payload, dispatcher)
    return api_response(
        {"notification": dump(notification_out(notification)), "channel": payload.channel, "sent": True},
        "Test notification sent",
    )


@router.post("/manual", status_code=status.HTTP_201_CREATED)
async def route_manual_notification(
    payload: ManualNotificationIn,
    current_user: User = Depends(admin_only),
    dispatcher: NotificationDispatcher = Depends(dispatcher_dep),
):
    intent = notification_service.intent_from_manual(payload, current_user)
    summary = await dispatcher.notify(intent)
    return api_response(summary.to_dict(), "Notification sent", status.HTTP_201_CREATED)


@router.get("/statistics")
async def route_statistics(
    period: str = Query("month"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    current_user: User = Depends(admin_only),
):
    stats = await notification_service.statistics(period, start_date=start_date, end_date=end_date)
    return api_response(stats, "Notification statistics")


@router.get("/templates")
async def route_templates(current_user: User = Depends(admin_only)):
    return api_response({"templates": notification_templates.catalogue()}, "Notification templates")


@router.get("/{notification_id}")
async def route_get_notification(notification_id: str, current_user: User = Depends(get_current_user)):
    notification = await notification_service.get_notification(current_user, notification_id)
    return api_response({"notification": dump(notification_out(notification))}, "Notification retrieved")


@router.patch("/{notification_id}/read")
async def route_mark_read(notification_id: str, current_user: User = Depends(get_current_user)):
    notification = await notification_service.mark_read(current_user, notification_id)
    return api_response({"notification": dump(notification_out(notification))}, "Notification marked as read")


@router.post("/{notification_id}/retry")
async def route_retry(
    notification_id: str,
    current_user: User = Depends(admin_only),
    dispatcher: NotificationDispatcher = Depends(dispatcher_dep),
):
    notification = await notification_service.retry_notification(notification_id, dispatcher)
    return api_response({"notification": dump(notification_out(notification))}, "Retry attempted")


@router.delete("/{notification_id}")
async def route_delete_notification(notification_id: str, current_user: User = Depends(get_current_user)):
    await notification_service.archive(current_user, notification_id)
    return api_response({}, "Notification deleted")
