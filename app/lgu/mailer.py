"""
Outbound email through the Mailgun HTTP API.

Sending is best effort: callers get a bool back and failures are logged, never raised.
"""
from __future__ import annotations

import base64
import html
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from flask import current_app

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from app.lgu.modules.transactions.models import Transaction

logger = logging.getLogger(__name__)


class MailgunError(RuntimeError):
    pass


@dataclass(frozen=True)
class MailgunClient:
    api_key: str
    domain: str
    base_url: str = "https://api.mailgun.net/v3"
    timeout_seconds: int = 30

    def _auth_header(self) -> str:
        token = f"api:{self.api_key}".encode("utf-8")
        return "Basic " + base64.b64encode(token).decode("ascii")

    def send_message(self, *, sender: str, to: str, subject: str, html_body: str) -> dict[str, Any]:
        url = f"{self.base_url.rstrip('/')}/{urllib.parse.quote(self.domain)}/messages"
        data = urllib.parse.urlencode({"from": sender, "to": to, "subject": subject, "html": html_body}).encode("utf-8")
        req = urllib.request.Request(url, data=data, method="POST")
        req.add_header("Authorization", self._auth_header())
        req.add_header("Content-Type", "application/x-www-form-urlencoded")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                raw = resp.read()
        except urllib.error.HTTPError as e:
            try:
                body = e.read().decode("utf-8", errors="ignore")
            except Exception:
                body = ""
            raise MailgunError(f"HTTP {e.code} from Mailgun: {body[:300]}") from e
        except urllib.error.URLError as e:
            raise MailgunError(f"Mailgun request failed: {e.reason}") from e
        try:
            return json.loads(raw.decode("utf-8"))
        except ValueError as e:
            raise MailgunError("Invalid JSON from Mailgun") from e


def mailgun_from_config(config: dict) -> MailgunClient | None:
    api_key = (config.get("MAILGUN_API_KEY") or "").strip()
    domain = (config.get("MAILGUN_DOMAIN") or "").strip()
    if not api_key or not domain:
        return None
    return MailgunClient(api_key=api_key, domain=domain)


def send_email(to: str, subject: str, html_body: str, *, system_name: str = "Payment System") -> bool:
    client = mailgun_from_config(current_app.config)
    if client is None:
        logger.error("Email not sent to %s: MAILGUN_API_KEY / MAILGUN_DOMAIN not configured", to)
        return False
    sender = f"{system_name} <noreply@{client.domain}>"
    try:
        client.send_message(sender=sender, to=to, subject=subject, html_body=html_body)
    except MailgunError as e:
        logger.error("Email send failed to %s (%s): %s", to, subject, e)
        return False
    logger.info("Email sent to %s (%s)", to, subject)
    return True


def build_branded_html(*, title: str, preheader: str, content_html: str, city_name: str, system_name: str) -> str:
    """Wrap body HTML in the shared header/footer layout. content_html must already be escaped."""
    city = html.escape(city_name)
    system = html.escape(system_name)
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{html.escape(title)}</title></head>
<body style="margin:0;padding:0;background:#f1f5f9;font-family:Arial,sans-serif;">
  <span style="display:none;">{html.escape(preheader)}</span>
  <div style="max-width:600px;margin:0 auto;background:#ffffff;">
    <div style="background:#1e3a8a;color:#ffffff;padding:20px;">
      <h1 style="margin:0;font-size:20px;">{city} {system}</h1>
    </div>
    <div style="padding:24px;">{content_html}</div>
    <div style="padding:16px;font-size:12px;color:#64748b;">
      <p>This is an automated message. Please do not reply to this email.</p>
    </div>
  </div>
</body>
</html>"""


def branding(s: "Session") -> tuple[str, str]:
    """(city full name, system name) from portal settings."""
    from app.lgu.modules.settings.service import get_or_create_settings

    settings = get_or_create_settings(s)
    city = (settings.city or {}).get("fullName") or "City"
    system = (settings.branding or {}).get("systemName") or "Payment System"
    return city, system


def _code_block(code: str) -> str:
    return (
        '<div style="font-size:28px;letter-spacing:6px;font-weight:bold;text-align:center;'
        f'padding:16px;background:#f8fafc;border:1px dashed #94a3b8;">{html.escape(code)}</div>'
    )


def send_verification_email(s: "Session", email: str, code: str, user_name: str) -> bool:
    city, system = branding(s)
    subject = f"Verify Your Email - {city} {system}"
    content = (
        f"<h2>Hello {html.escape(user_name)}!</h2>"
        f"<p>Thank you for registering with the {html.escape(city)} {html.escape(system)}. "
        "To complete your registration, please verify your email address by entering the following verification code:</p>"
        f"{_code_block(code)}"
        "<p><strong>Important:</strong> this code expires in 10 minutes.</p>"
        "<p>Once verified, you'll be able to access all the payment services.</p>"
    )
    body = build_branded_html(title=subject, preheader=subject, content_html=content, city_name=city, system_name=system)
    return send_email(email, subject, body, system_name=system)


def send_password_reset_email(s: "Session", email: str, code: str, user_name: str) -> bool:
    city, system = branding(s)
    subject = f"Password Reset - {city} {system}"
    content = (
        f"<h2>Hello {html.escape(user_name)}!</h2>"
        f"<p>We received a request to reset your password for your {html.escape(city)} {html.escape(system)} account. "
        "To proceed with the password reset, please use the following verification code:</p>"
        f"{_code_block(code)}"
        "<p><strong>Important:</strong> this code expires in 10 minutes. "
        "If you did not request a password reset, you can ignore this email.</p>"
    )
    body = build_branded_html(title=subject, preheader=subject, content_html=content, city_name=city, system_name=system)
    return send_email(email, subject, body, system_name=system)


# ---------- Application status ----------
STATUS_EMAIL = {
    "pending": ("Application Received - Under Review", "Your application has been received and is pending review.", "#f59e0b"),
    "reviewing": ("Application Under Review", "Your application is currently being reviewed by our team.", "#3b82f6"),
    "rejected": ("Application Status Update", "Unfortunately, your application has been rejected.", "#ef4444"),
    "approved": ("Application Approved!", "Congratulations! Your application has been approved.", "#10b981"),
}


def _status_closing(status: str) -> str:
    if status == "approved":
        return "You can now proceed with the next steps. If you have any questions, please contact our support team."
    if status == "rejected":
        return "If you have any questions about this decision or would like to appeal, please contact our support team."
    return "We will notify you once there are any updates to your application."


def send_application_status_email(
    s: "Session",
    *,
    email: str,
    user_name: str | None,
    service_title: str,
    submission_id: int | str,
    status: str,
    admin_notes: str | None = None,
) -> bool:
    subject, message, color = STATUS_EMAIL.get(status, STATUS_EMAIL["pending"])
    city, system = branding(s)
    rows = [
        ("Application Type", service_title),
        ("Status", status.upper()),
        ("Application ID", str(submission_id)),
    ]
    if admin_notes:
        rows.append(("Admin Notes", admin_notes))
    details = "".join(
        f'<p style="margin:4px 0;"><strong>{html.escape(label)}:</strong> {html.escape(value)}</p>' for label, value in rows
    )
    content = (
        f"<h2>Hello {html.escape(user_name or 'Valued Customer')}!</h2>"
        f'<p style="color:{color};font-weight:bold;">{html.escape(message)}</p>'
        f'<div style="background:#f8fafc;border-left:4px solid {color};padding:12px 16px;margin:16px 0;">{details}</div>'
        f"<p>{html.escape(_status_closing(status))}</p>"
        f"<p>Best regards,<br>{html.escape(system)} Team</p>"
    )
    body = build_branded_html(title=subject, preheader=message, content_html=content, city_name=city, system_name=system)
    return send_email(email, subject, body, system_name=system)


# ---------- Payment outcome ----------
# Philippine time has no DST
MANILA = timezone(timedelta(hours=8), "Asia/Manila")


def format_php(amount_minor: int | None) -> str:
    return f"₱{(amount_minor or 0) / 100:,.2f}"


def format_manila(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.replace(tzinfo=timezone.utc).astimezone(MANILA).strftime("%m/%d/%Y, %I:%M:%S %p")


def build_receipt_html(
    *,
    city_name: str,
    system_name: str,
    reference: str,
    date_time: str,
    service_name: str,
    items: list[tuple[str, str]],
    total: str,
    seal_logo_url: str = "",
) -> str:
    rows = "".join(
        f'<tr><td style="padding:6px 0;">{html.escape(label)}</td>'
        f'<td style="padding:6px 0;text-align:right;white-space:nowrap;">{html.escape(amount)}</td></tr>'
        for label, amount in items
    )
    logo = (
        f'<img src="{html.escape(seal_logo_url)}" alt="Seal" width="40" height="40" style="display:block;margin:0 auto 8px;"/>'
        if seal_logo_url
        else ""
    )
    return f"""<table role="presentation" width="100%" style="max-width:420px;border:1px solid #e5e7eb;border-radius:8px;font-size:12px;">
  <tr><td style="padding:16px 20px;text-align:center;">
    {logo}
    <div style="font-size:10px;letter-spacing:.1em;text-transform:uppercase;color:#6b7280;">Official Receipt</div>
    <div style="font-size:14px;font-weight:600;">{html.escape(city_name)}</div>
    <div style="font-size:14px;font-weight:600;">{html.escape(system_name)}</div>
  </td></tr>
  <tr><td style="padding:0 20px 16px;font-family:Consolas,'Courier New',monospace;">
    <table width="100%">
      <tr><td>Reference</td><td style="text-align:right;font-weight:600;">{html.escape(reference)}</td></tr>
      <tr><td>Date</td><td style="text-align:right;">{html.escape(date_time)}</td></tr>
      <tr><td>Service</td><td style="text-align:right;">{html.escape(service_name)}</td></tr>
    </table>
    <div style="border-top:1px dashed #d1d5db;margin:12px 0;"></div>
    <table width="100%">{rows}</table>
    <div style="border-top:1px dashed #d1d5db;margin:12px 0;"></div>
    <table width="100%"><tr><td style="font-weight:600;">Total</td><td style="text-align:right;font-weight:600;">{html.escape(total)}</td></tr></table>
  </td></tr>
</table>"""


PAYMENT_SUBJECTS = {
    "paid": "Payment Successful - {ref}",
    "failed": "Payment Failed - {ref}",
    "refunded": "Payment Refunded - {ref}",
}


def payment_email_subject(kind: str, reference: str | None) -> str:
    if kind == "paid":
        return PAYMENT_SUBJECTS[kind].format(ref=reference or "Receipt")
    return PAYMENT_SUBJECTS[kind].format(ref=reference or "")


def send_payment_email(s: "Session", tx: "Transaction", kind: str, *, seal_logo_url: str = "") -> bool:
    """Receipt for `paid`, a one-line summary for `failed` / `refunded`."""
    city, system = branding(s)
    subject = payment_email_subject(kind, tx.reference)
    total = format_php(tx.total_amount_minor)
    service_name = tx.service_name or "LGU Service"
    date_value = format_manila(tx.bucket_date)
    greeting = f'<p style="margin:0 0 12px;">Hello {html.escape(tx.user_full_name or "Customer")},</p>'

    if kind == "paid":
        breakdown = tx.breakdown or []
        items = (
            [(str(b.get("label") or ""), format_php(int(b.get("amountMinor") or 0))) for b in breakdown]
            if breakdown
            else [("Total", total)]
        )
        receipt = build_receipt_html(
            city_name=city,
            system_name=system,
            reference=tx.reference or "",
            date_time=date_value,
            service_name=service_name,
            items=items,
            total=total,
            seal_logo_url=seal_logo_url,
        )
        content = (
            f"{greeting}"
            '<p style="margin:0 0 12px;">Your payment has been received. Below is your official receipt.</p>'
            f"{receipt}"
        )
    else:
        content = (
            f"{greeting}"
            f'<p style="margin:0 0 12px;">Your payment for {html.escape(service_name)} amounting {html.escape(total)} '
            f"on {html.escape(date_value)} was {html.escape(kind)}. Reference: {html.escape(tx.reference or '')}.</p>"
        )
    body = build_branded_html(title=subject, preheader=subject, content_html=content, city_name=city, system_name=system)
    return send_email(tx.user_email or "", subject, body, system_name=system)
