"""Email bodies used by account flows and notification delivery."""
import html
from dataclasses import dataclass
from string import Template

from telecare.config import get_settings

settings = get_settings()

_LAYOUT = Template("""<!DOCTYPE html>
<html>
<body style="font-family: Arial, sans-serif; background: #f4f6f8; padding: 24px;">
  <div style="max-width: 560px; margin: 0 auto; background: #ffffff; border-radius: 8px; overflow: hidden;">
    <div style="background: $color; color: #ffffff; padding: 16px 24px;">
      <h2 style="margin: 0;">$heading</h2>
    </div>
    <div style="padding: 24px; color: #333333; line-height: 1.5;">
      $body
    </div>
    <div style="padding: 12px 24px; font-size: 12px; color: #888888;">
      $app_name &middot; This is an automated message, please do not reply.
    </div>
  </div>
</body>
</html>""")

_BUTTON = Template(
    '<p><a href="$url" style="display: inline-block; padding: 10px 18px; background: $color; '
    'color: #ffffff; text-decoration: none; border-radius: 4px;">$label</a></p>'
)

CATEGORY_COLORS = {
    "appointment": "#2563eb",
    "prescription": "#7c3aed",
    "lab-result": "#0891b2",
    "medical-record": "#0f766e",
    "billing": "#ca8a04",
    "reminder": "#2563eb",
    "alert": "#dc2626",
    "security": "#dc2626",
    "health-tip": "#16a34a",
    "announcement": "#4f46e5",
}
DEFAULT_COLOR = "#0d9488"


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html: str
    text: str


@dataclass(frozen=True)
class EmailTemplate:
    name: str
    subject: str
    heading: str
    body: str  # HTML fragment, $placeholders are escaped on render
    text: str
    button_label: str | None = None

    def render(self, url: str | None = None, color: str = DEFAULT_COLOR, **context) -> RenderedEmail:
        context.setdefault("app_name", settings.APP_NAME)
        safe = {k: html.escape(str(v)) for k, v in context.items()}
        body = Template(self.body).safe_substitute(safe)
        if url and self.button_label:
            body += _BUTTON.substitute(
                url=html.escape(url, quote=True),
                color=color,
                label=Template(self.button_label).safe_substitute(safe),
            )
        page = _LAYOUT.substitute(
            color=color,
            heading=Template(self.heading).safe_substitute(safe),
            body=body,
            app_name=safe["app_name"],
        )
        text = Template(self.text).safe_substitute(context, url=url or "")
        return RenderedEmail(
            subject=Template(self.subject).safe_substitute(context),
            html=page,
            text=text,
        )


VERIFY_EMAIL = EmailTemplate(
    name="verify_email",
    subject="Verify your email address",
    heading="Welcome, $first_name",
    body="<p>Please confirm your email address to finish setting up your account.</p>"
         "<p>This link expires in $hours hours.</p>",
    text="Hi $first_name,\n\nConfirm your email address: $url\n\nThis link expires in $hours hours.",
    button_label="Verify email",
)

PASSWORD_RESET = EmailTemplate(
    name="password_reset",
    subject="Reset your password",
    heading="Password reset",
    body="<p>Hi $first_name, we received a request to reset your password.</p>"
         "<p>The link expires in $minutes minutes. If you did not ask for this, ignore this email.</p>",
    text="Hi $first_name,\n\nReset your password: $url\n\nThe link expires in $minutes minutes.",
    button_label="Reset password",
)

WELCOME = EmailTemplate(
    name="welcome",
    subject="Welcome to $app_name",
    heading="Welcome to $app_name",
    body="<p>Hi $first_name, your $role account has been created.</p>",
    text="Hi $first_name,\n\nYour $role account has been created.",
    button_label="Open $app_name",
)

NOTIFICATION = EmailTemplate(
    name="notification",
    subject="$title",
    heading="$title",
    body="<p>Hi $first_name,</p><p>$message</p>",
    text="Hi $first_name,\n\n$message\n\n$url",
    button_label="View details",
)


def frontend_url(path: str) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/{path.lstrip('/')}"
