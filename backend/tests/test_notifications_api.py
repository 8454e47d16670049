from datetime import timedelta

import pytest

from beanie import PydanticObjectId as OID

from telecare.constants import DeliveryState, NotificationStatus
from telecare.models import Notification
from telecare.services.notification_jobs import deliver_scheduled_notifications, retry_failed_notifications
from telecare.services.notification_service import NotificationIntent, retry_eligible
from conftest import API

STAMP = "%Y-%m-%dT%H:%M:%SZ"


async def _manual(client, admin, **body):
    resp = await client.post(f"{API}/notifications/manual", json=body, headers=admin.headers)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


async def _in_app(dispatcher, session, title="Hello", **kwargs):
    summary = await dispatcher.notify(
        NotificationIntent(title=title, message=f"{title} message", recipient_ids=[session.id], **kwargs)
    )
    return summary.notification_ids[0]


async def test_fan_out_with_preferences(api, client, senders, frozen_clock):
    senders["push"].fail = True
    patient = await api.signup("rita@x.io")
    resp = await client.patch(
        f"{API}/notifications/preferences",
        json={
            "categories": {
                "sms": {"appointments": False},
                "email": {"appointments": True},
                "push": {"appointments": True},
            }
        },
        headers=patient.headers,
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["categories"]["sms"] == {"appointment": False}

    admin = await api.admin()
    summary = await _manual(
        client,
        admin,
        recipientIds=[patient.id],
        title="Appointment tomorrow",
        message="See you at 10:00",
        category="appointment",
        channels=["email", "sms", "push"],
    )
    assert summary["recordsCreated"] == 1
    assert summary["sent"]["email"] == 1
    assert summary["sent"]["sms"] == 0
    assert summary["failed"]["push"] == 1
    assert senders["sms"].calls == []

    notification = await Notification.get(OID(summary["notificationIds"][0]))
    assert notification.channels == ["in-app", "email", "push"]
    assert notification.status == NotificationStatus.SENT
    assert notification.delivery_status.email.delivered
    assert notification.delivery_status.in_app.delivered
    assert notification.delivery_status.push.error == "push provider unavailable"
    assert notification.retry_count == 1

    assert notification.id not in [n.id for n in await retry_eligible()]
    frozen_clock.advance(minutes=5)
    assert notification.id in [n.id for n in await retry_eligible()]


async def test_confidential_never_uses_sms(api, client, senders):
    patient = await api.signup("conf@x.io", phoneNumber="+15550002222")
    admin = await api.admin()
    summary = await _manual(
        client,
        admin,
        recipientIds=[patient.id],
        title="Lab result",
        message="Your HIV panel is ready",
        category="lab-result",
        sensitivity="confidential",
        channels=["email", "sms", "push"],
    )
    assert summary["sent"]["sms"] == 0
    assert summary["failed"]["sms"] == 0
    assert senders["sms"].calls == []
    notification = await Notification.get(OID(summary["notificationIds"][0]))
    assert "sms" not in notification.channels
    assert notification.delivery_status.sms.state == DeliveryState.NOT_SENT


async def test_all_external_channels_failing_marks_failed(api, client, senders, dispatcher):
    senders["email"].fail = True
    senders["push"].fail = True
    patient = await api.signup("fail@x.io")
    notification_id = await _in_app(dispatcher, patient, channels=["email", "push"])

    notification = await Notification.get(OID(notification_id))
    assert notification.status == NotificationStatus.FAILED
    assert notification.retry_count == 1
    assert notification.delivery_status.in_app.delivered
    assert "email: email provider unavailable" in notification.failure_reason


async def test_in_app_only_is_sent_immediately(api, dispatcher):
    patient = await api.signup("inapp@x.io")
    notification = await Notification.get(OID(await _in_app(dispatcher, patient)))
    assert notification.status == NotificationStatus.SENT
    assert notification.sent_at is not None
    assert notification.retry_count == 0


async def test_retry_job_recovers_failed_channel(api, senders, dispatcher, frozen_clock):
    senders["push"].fail = True
    patient = await api.signup("retry@x.io")
    notification_id = await _in_app(dispatcher, patient, channels=["email", "push"])

    # Backoff not over yet
    assert await dispatcher.retry_failed() == 0
    frozen_clock.advance(minutes=5)
    senders["push"].fail = False
    await retry_failed_notifications()

    notification = await Notification.get(OID(notification_id))
    assert notification.delivery_status.push.delivered
    assert notification.delivery_status.push.error is None
    assert notification.retry_count == 1
    assert notification.failure_reason is None
    # Email was not sent twice
    assert len(senders["email"].calls) == 1
    assert len(senders["push"].calls) == 2
    assert await retry_eligible() == []


async def test_retry_stops_at_max_retries(api, senders, dispatcher, frozen_clock):
    senders["email"].fail = True
    patient = await api.signup("maxed@x.io")
    notification_id = await _in_app(dispatcher, patient, channels=["email"])

    for expected in (2, 3):
        frozen_clock.advance(minutes=5)
        assert await dispatcher.retry_failed() == 1
        notification = await Notification.get(OID(notification_id))
        assert notification.retry_count == expected

    frozen_clock.advance(minutes=5)
    assert await dispatcher.retry_failed() == 0
    notification = await Notification.get(OID(notification_id))
    assert notification.status == NotificationStatus.FAILED
    assert len(senders["email"].calls) == 3


async def test_admin_retry_skips_backoff(api, client, senders, dispatcher):
    senders["push"].fail = True
    patient = await api.signup("manualretry@x.io")
    admin = await api.admin()
    notification_id = await _in_app(dispatcher, patient, channels=["push"])

    senders["push"].fail = False
    resp = await client.post(f"{API}/notifications/{notification_id}/retry", headers=admin.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["notification"]["deliveryStatus"]["push"]["delivered"] is True

    resp = await client.post(f"{API}/notifications/{notification_id}/retry", headers=admin.headers)
    assert resp.status_code == 400

    resp = await client.post(f"{API}/notifications/{notification_id}/retry", headers=patient.headers)
    assert resp.status_code == 403


async def test_admin_retry_refuses_expired(api, client, senders, dispatcher, frozen_clock):
    senders["push"].fail = True
    patient = await api.signup("lapsed@x.io")
    admin = await api.admin()
    notification_id = await _in_app(
        dispatcher, patient, channels=["push"], expires_at=frozen_clock.now + timedelta(minutes=5)
    )
    assert len(senders["push"].calls) == 1

    senders["push"].fail = False
    frozen_clock.advance(minutes=6)
    resp = await client.post(f"{API}/notifications/{notification_id}/retry", headers=admin.headers)
    assert resp.status_code == 400
    assert len(senders["push"].calls) == 1
    assert await dispatcher.retry_failed() == 0


async def test_expired_intent_is_recorded_but_not_sent(api, client, senders, frozen_clock):
    patient = await api.signup("toolate@x.io")
    admin = await api.admin()
    summary = await _manual(
        client,
        admin,
        recipientIds=[patient.id],
        title="Flu clinic today",
        message="Walk-ins until noon",
        category="announcement",
        channels=["email"],
        expiresAt=(frozen_clock.now - timedelta(minutes=1)).strftime(STAMP),
    )
    assert summary["recordsCreated"] == 1
    assert summary["sent"]["email"] == 0
    assert summary["sent"]["in-app"] == 0
    assert summary["errors"][0]["error"] == "Notification expired before delivery"
    assert senders["email"].calls == []

    notification = await Notification.get(OID(summary["notificationIds"][0]))
    assert notification.delivery_status.in_app.state == DeliveryState.NOT_SENT


async def test_scheduled_notification_waits(api, client, senders, frozen_clock):
    patient = await api.signup("later@x.io")
    admin = await api.admin()
    when = frozen_clock.now + timedelta(hours=1)
    summary = await _manual(
        client,
        admin,
        recipientIds=[patient.id],
        title="Reminder",
        message="Take your medication",
        category="reminder",
        channels=["email"],
        scheduledFor=when.isoformat(),
    )
    assert summary["scheduled"] == 1
    assert senders["email"].calls == []

    notification = await Notification.get(OID(summary["notificationIds"][0]))
    assert notification.status == NotificationStatus.PENDING
    assert notification.delivery_status.in_app.state == DeliveryState.NOT_SENT

    resp = await client.get(f"{API}/notifications", headers=patient.headers)
    assert resp.json()["data"]["pagination"]["total"] == 0

    await deliver_scheduled_notifications()
    assert senders["email"].calls == []

    frozen_clock.advance(hours=1, seconds=1)
    # Access token has expired by now
    patient = await api.session("later@x.io")
    await deliver_scheduled_notifications()
    assert len(senders["email"].calls) == 1

    notification = await Notification.get(OID(summary["notificationIds"][0]))
    assert notification.status == NotificationStatus.SENT
    assert notification.delivery_status.in_app.delivered
    resp = await client.get(f"{API}/notifications", headers=patient.headers)
    assert resp.json()["data"]["pagination"]["total"] == 1


async def test_scheduled_notification_cannot_be_fetched_early(api, client, frozen_clock):
    patient = await api.signup("peek@x.io")
    admin = await api.admin()
    summary = await _manual(
        client,
        admin,
        recipientIds=[patient.id],
        title="Tomorrow",
        message="Not yet",
        category="reminder",
        scheduledFor=(frozen_clock.now + timedelta(days=1)).strftime(STAMP),
    )
    notification_id = summary["notificationIds"][0]
    url = f"{API}/notifications/{notification_id}"

    assert (await client.get(url, headers=patient.headers)).status_code == 404
    assert (await client.patch(f"{url}/read", headers=patient.headers)).status_code == 404
    assert (await client.delete(url, headers=patient.headers)).status_code == 404

    notification = await Notification.get(OID(notification_id))
    assert notification.is_read is False
    assert notification.is_archived is False


async def test_expired_notification_cannot_be_fetched(api, client, dispatcher, frozen_clock):
    patient = await api.signup("stale@x.io")
    notification_id = await _in_app(dispatcher, patient, expires_at=frozen_clock.now + timedelta(minutes=5))
    url = f"{API}/notifications/{notification_id}"
    assert (await client.get(url, headers=patient.headers)).status_code == 200

    frozen_clock.advance(minutes=5)
    assert (await client.get(url, headers=patient.headers)).status_code == 404
    assert (await client.patch(f"{url}/read", headers=patient.headers)).status_code == 404


async def test_broadcast_by_role(api, client):
    await api.signup("p1@x.io")
    await api.signup("p2@x.io")
    await api.signup("d1@x.io", role="doctor")
    admin = await api.admin()
    summary = await _manual(client, admin, recipientType="patient", title="Clinic closed", message="Closed on Friday")
    assert summary["recordsCreated"] == 2
    assert summary["batchId"].startswith("BATCH-")
    records = await Notification.find({"batch_id": summary["batchId"]}).to_list()
    assert {r.is_bulk for r in records} == {True}


async def test_manual_reports_unknown_recipients(api, client):
    patient = await api.signup("known@x.io")
    admin = await api.admin()
    summary = await _manual(
        client,
        admin,
        recipientIds=[patient.id, "000000000000000000000000", "garbage"],
        title="Hi",
        message="Hello",
    )
    assert summary["recordsCreated"] == 1
    assert summary["totalRecipients"] == 3
    assert len(summary["errors"]) == 2


async def test_manual_from_template(api, client):
    patient = await api.signup("tpl@x.io")
    admin = await api.admin()
    summary = await _manual(
        client,
        admin,
        recipientIds=[patient.id],
        templateId="payment_due",
        variables={"amount": "$40", "due_date": "1 March"},
    )
    notification = await Notification.get(OID(summary["notificationIds"][0]))
    assert notification.title == "Payment due"
    assert notification.message == "A payment of $40 is due on 1 March."
    assert notification.category == "billing"
    assert notification.template_id == "payment_due"

    resp = await client.post(
        f"{API}/notifications/manual",
        json={"recipientIds": [patient.id], "templateId": "payment_due", "variables": {}},
        headers=admin.headers,
    )
    assert resp.status_code == 400


@pytest.mark.parametrize("category", ["health-tip", "announcement"])
async def test_manual_accepts_broadcast_categories(api, client, category):
    patient = await api.signup("reader@x.io")
    admin = await api.admin()
    summary = await _manual(
        client, admin, recipientIds=[patient.id], title="Stay hydrated", message="Drink water", category=category
    )
    assert summary["sent"]["in-app"] == 1

    resp = await client.get(f"{API}/notifications", params={"type": category}, headers=patient.headers)
    assert [n["category"] for n in resp.json()["data"]["notifications"]] == [category]


async def test_manual_requires_admin(api, client):
    patient = await api.signup("nope@x.io")
    resp = await client.post(
        f"{API}/notifications/manual",
        json={"recipientIds": [patient.id], "title": "x", "message": "y"},
        headers=patient.headers,
    )
    assert resp.status_code == 403
    assert resp.json()["success"] is False


async def test_inbox_read_flow(api, client, dispatcher, frozen_clock):
    patient = await api.signup("inbox@x.io")
    first = await _in_app(dispatcher, patient, title="First")
    frozen_clock.advance(seconds=1)
    second = await _in_app(dispatcher, patient, title="Second")

    resp = await client.get(f"{API}/notifications/unread-count", headers=patient.headers)
    assert resp.json()["data"]["count"] == 2

    resp = await client.get(f"{API}/notifications", headers=patient.headers)
    data = resp.json()["data"]
    assert [n["title"] for n in data["notifications"]] == ["Second", "First"]
    assert data["summary"] == {"total": 2, "unread": 2, "read": 0}

    frozen_clock.advance(seconds=5)
    resp = await client.patch(f"{API}/notifications/{first}/read", headers=patient.headers)
    assert resp.status_code == 200
    read = resp.json()["data"]["notification"]
    assert read["isRead"] is True
    assert read["status"] == "read"
    assert read["readAt"] >= read["createdAt"]

    frozen_clock.advance(seconds=5)
    resp = await client.patch(f"{API}/notifications/{first}/read", headers=patient.headers)
    assert resp.json()["data"]["notification"]["readAt"] == read["readAt"]

    resp = await client.get(f"{API}/notifications", params={"isRead": "false"}, headers=patient.headers)
    assert [n["id"] for n in resp.json()["data"]["notifications"]] == [second]

    resp = await client.patch(f"{API}/notifications/mark-all-read", headers=patient.headers)
    assert resp.json()["data"]["updated"] == 1
    resp = await client.get(f"{API}/notifications/unread-count", headers=patient.headers)
    assert resp.json()["data"]["count"] == 0


async def test_other_users_notifications_are_hidden(api, client, dispatcher):
    owner = await api.signup("owner@x.io")
    other = await api.signup("other@x.io")
    notification_id = await _in_app(dispatcher, owner)

    for method, path in (
        ("GET", f"/notifications/{notification_id}"),
        ("PATCH", f"/notifications/{notification_id}/read"),
        ("DELETE", f"/notifications/{notification_id}"),
    ):
        resp = await client.request(method, f"{API}{path}", headers=other.headers)
        assert resp.status_code == 404

    resp = await client.get(f"{API}/notifications/{notification_id}", headers=owner.headers)
    assert resp.status_code == 200


async def test_delete_and_clear_all_archive(api, client, dispatcher):
    patient = await api.signup("archive@x.io")
    first = await _in_app(dispatcher, patient, title="One")
    await _in_app(dispatcher, patient, title="Two")
    await _in_app(dispatcher, patient, title="Three")

    resp = await client.delete(f"{API}/notifications/{first}", headers=patient.headers)
    assert resp.status_code == 200
    stored = await Notification.get(OID(first))
    assert stored.is_archived
    assert stored.archived_at is not None

    resp = await client.get(f"{API}/notifications/{first}", headers=patient.headers)
    assert resp.status_code == 404

    resp = await client.delete(f"{API}/notifications/clear-all", headers=patient.headers)
    assert resp.json()["data"]["cleared"] == 2
    resp = await client.get(f"{API}/notifications", headers=patient.headers)
    assert resp.json()["data"]["pagination"]["total"] == 0


async def test_expired_notifications_are_hidden_by_default(api, client, dispatcher, frozen_clock):
    patient = await api.signup("expiry@x.io")
    await _in_app(dispatcher, patient, title="Flash sale", expires_at=frozen_clock.now + timedelta(minutes=5))
    await _in_app(dispatcher, patient, title="Keeps")

    frozen_clock.advance(minutes=5)
    resp = await client.get(f"{API}/notifications", headers=patient.headers)
    assert [n["title"] for n in resp.json()["data"]["notifications"]] == ["Keeps"]

    resp = await client.get(f"{API}/notifications", params={"includeExpired": "true"}, headers=patient.headers)
    assert resp.json()["data"]["pagination"]["total"] == 2


async def test_unread_list_and_filters(api, client, dispatcher):
    patient = await api.signup("filters@x.io")
    await _in_app(dispatcher, patient, title="Bill", category="billing")
    await _in_app(dispatcher, patient, title="Visit", category="appointment")

    resp = await client.get(f"{API}/notifications", params={"type": "billing"}, headers=patient.headers)
    assert [n["title"] for n in resp.json()["data"]["notifications"]] == ["Bill"]

    resp = await client.get(f"{API}/notifications/unread", params={"limit": 1}, headers=patient.headers)
    assert len(resp.json()["data"]["notifications"]) == 1

    resp = await client.get(f"{API}/notifications", params={"sortBy": "bogus"}, headers=patient.headers)
    assert resp.status_code == 400


async def test_preferences_merge(api, client):
    patient = await api.signup("prefs@x.io")
    url = f"{API}/notifications/preferences"

    resp = await client.get(url, headers=patient.headers)
    assert resp.json()["data"]["channels"] == {"email": True, "sms": True, "push": True, "inApp": True}

    await client.patch(url, json={"channels": {"sms": False}}, headers=patient.headers)
    resp = await client.patch(
        url,
        json={"categories": {"email": {"billing": False}}, "quietHours": {"enabled": True, "start": "23:00"}},
        headers=patient.headers,
    )
    data = resp.json()["data"]
    assert data["channels"] == {"email": True, "sms": False, "push": True, "inApp": True}
    assert data["categories"] == {"email": {"billing": False}}
    assert data["quietHours"]["enabled"] is True
    assert data["quietHours"]["start"] == "23:00"
    assert data["quietHours"]["end"] == "07:00"

    resp = await client.patch(url, json={"channels": {"fax": True}}, headers=patient.headers)
    assert resp.status_code == 400


async def test_send_test_notification(api, client, senders):
    patient = await api.signup("tester@x.io")
    resp = await client.post(f"{API}/notifications/test", json={"channel": "email"}, headers=patient.headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["notification"]["deliveryStatus"]["email"]["delivered"] is True
    assert senders["email"].calls[0][0] == patient.id

    senders["push"].fail = True
    resp = await client.post(f"{API}/notifications/test", json={"channel": "push"}, headers=patient.headers)
    assert resp.status_code == 400


async def test_register_device_upserts(api, client):
    first = await api.signup("dev1@x.io")
    second = await api.signup("dev2@x.io")
    url = f"{API}/notifications/register-device"

    resp = await client.post(url, json={"token": "fcm-abc", "platform": "android"}, headers=first.headers)
    assert resp.status_code == 200
    device_id = resp.json()["data"]["id"]

    resp = await client.post(url, json={"token": "fcm-abc", "platform": "ios"}, headers=second.headers)
    assert resp.json()["data"]["id"] == device_id
    assert resp.json()["data"]["platform"] == "ios"


async def test_admin_statistics_and_templates(api, client, dispatcher, frozen_clock):
    patient = await api.signup("stats@x.io")
    admin = await api.admin()
    await _in_app(dispatcher, patient, title="A", category="billing")
    await _in_app(dispatcher, patient, title="B", category="billing")

    resp = await client.get(f"{API}/notifications/statistics", params={"period": "week"}, headers=admin.headers)
    assert resp.status_code == 200
    stats = resp.json()["data"]
    assert stats["total"] == 2
    assert stats["byCategory"] == {"billing": 2}
    assert stats["deliveredByChannel"]["in-app"] == 2
    assert stats["readRate"] == 0.0

    resp = await client.get(f"{API}/notifications/statistics", params={"period": "decade"}, headers=admin.headers)
    assert resp.status_code == 400

    now = frozen_clock.now
    window = {
        "startDate": (now - timedelta(hours=1)).strftime(STAMP),
        "endDate": (now + timedelta(hours=1)).strftime(STAMP),
    }
    resp = await client.get(f"{API}/notifications/statistics", params=window, headers=admin.headers)
    assert resp.json()["data"]["period"] == "custom"
    assert resp.json()["data"]["total"] == 2

    backwards = {"startDate": window["endDate"], "endDate": window["startDate"]}
    resp = await client.get(f"{API}/notifications/statistics", params=backwards, headers=admin.headers)
    assert resp.status_code == 400

    resp = await client.get(f"{API}/notifications/templates", headers=admin.headers)
    ids = {t["id"] for t in resp.json()["data"]["templates"]}
    assert {"appointment_reminder", "security_alert", "billing_invoice"} <= ids

    resp = await client.get(f"{API}/notifications/templates", headers=patient.headers)
    assert resp.status_code == 403
