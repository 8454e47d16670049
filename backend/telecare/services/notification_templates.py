"""Catalogue of ready-made notification texts for admins.

Placeholders use ``string.Template`` syntax and are filled from the
``variables`` of a manual notification.
"""
from dataclasses import asdict, dataclass, field
from string import Template
from typing import Dict, List

from telecare.errors import InvalidField, MissingField


@dataclass(frozen=True)
class NotificationTemplate:
    id: str
    name: str
    category: str
    priority: str
    title: str
    message: str
    channels: List[str] = field(default_factory=lambda: ["in-app", "email"])

    @property
    def placeholders(self) -> List[str]:
        names = []
        for text in (self.title, self.message):
            for match in Template.pattern.finditer(text):
                name = match.group("named") or match.group("braced")
                if name and name not in names:
                    names.append(name)
        return names

    def render(self, variables: Dict[str, str]) -> tuple[str, str]:
        missing = [p for p in self.placeholders if p not in variables]
        if missing:
            raise MissingField(
                f"Missing template variables: {', '.join(missing)}",
                errors=[{"field": f"variables.{p}", "message": "required"} for p in missing],
            )
        return (
            Template(self.title).substitute(variables),
            Template(self.message).substitute(variables),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data["placeholders"] = self.placeholders
        return data


TEMPLATES: Dict[str, NotificationTemplate] = {
    t.id: t
    for t in [
        NotificationTemplate(
            id="appointment_reminder",
            name="Appointment reminder",
            category="appointment",
            priority="medium",
            title="Upcoming appointment",
            message="You have an appointment with $doctor_name on $date at $time.",
            channels=["in-app", "email", "sms", "push"],
        ),
        NotificationTemplate(
            id="appointment_confirmed",
            name="Appointment confirmed",
            category="appointment",
            priority="medium",
            title="Appointment confirmed",
            message="Your appointment on $date at $time has been confirmed.",
        ),
        NotificationTemplate(
            id="appointment_cancelled",
            name="Appointment cancelled",
            category="appointment",
            priority="high",
            title="Appointment cancelled",
            message="Your appointment on $date has been cancelled. $reason",
            channels=["in-app", "email", "sms"],
        ),
        NotificationTemplate(
            id="prescription_ready",
            name="Prescription ready",
            category="prescription",
            priority="medium",
            title="Prescription ready",
            message="Your prescription from $doctor_name is ready.",
            channels=["in-app", "email", "push"],
        ),
        NotificationTemplate(
            id="prescription_refill",
            name="Prescription refill due",
            category="prescription",
            priority="medium",
            title="Time to refill $medication",
            message="Your supply of $medication runs out on $date. Request a refill from $doctor_name.",
            channels=["in-app", "email", "push"],
        ),
        NotificationTemplate(
            id="lab_result_available",
            name="Lab result available",
            category="lab-result",
            priority="high",
            title="New lab results",
            message="Your $test_name results are available. Sign in to view them.",
            channels=["in-app", "email", "push"],
        ),
        NotificationTemplate(
            id="lab_result_critical",
            name="Critical lab result",
            category="lab-result",
            priority="urgent",
            title="Important lab result",
            message="Your $test_name result needs attention. Please contact $doctor_name as soon as possible.",
            channels=["in-app", "email", "push"],
        ),
        NotificationTemplate(
            id="payment_due",
            name="Payment due",
            category="billing",
            priority="medium",
            title="Payment due",
            message="A payment of $amount is due on $due_date.",
        ),
        NotificationTemplate(
            id="billing_invoice",
            name="New invoice",
            category="billing",
            priority="low",
            title="New invoice $invoice_number",
            message="Invoice $invoice_number for $amount has been issued.",
        ),
        NotificationTemplate(
            id="security_alert",
            name="Security alert",
            category="security",
            priority="urgent",
            title="Security alert",
            message="$details If this was not you, reset your password immediately.",
            channels=["in-app", "email", "sms", "push"],
        ),
        NotificationTemplate(
            id="system_welcome",
            name="Welcome",
            category="system",
            priority="low",
            title="Welcome, $first_name",
            message="Your account is ready. Complete your profile to get the most out of the service.",
            channels=["in-app"],
        ),
        NotificationTemplate(
            id="system_maintenance",
            name="Scheduled maintenance",
            category="system",
            priority="low",
            title="Scheduled maintenance",
            message="The service will be unavailable on $date from $start to $end.",
            channels=["in-app", "email"],
        ),
    ]
}


def get_template(template_id: str) -> NotificationTemplate:
    template = TEMPLATES.get(template_id)
    if not template:
        raise InvalidField(f"Unknown template: {template_id}")
    return template


def catalogue() -> List[dict]:
    return [t.to_dict() for t in TEMPLATES.values()]
