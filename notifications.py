"""
notifications.py
Member notifications over email and WhatsApp.

`send()` never raises: payment and subscription state is already committed
by the time a message goes out, so delivery problems are logged and
reported as a result string instead.
"""

from __future__ import annotations

import logging
import smtplib
from dataclasses import dataclass
from email.message import EmailMessage

import requests
from twilio.rest import Client

from utils import normalize_phone

logger = logging.getLogger(__name__)

OK, SKIPPED, FAILED = 'ok', 'skipped', 'failed'

TEMPLATES = {
    'registration': (
        'Welcome to {gym_name} - Registration Successful',
        "Hi {name}, welcome to {gym_name}! Your {plan_name} plan starts on {start_date} "
        "and ends on {end_date}. We'll confirm once your payment of {currency} {amount} is received.",
    ),
    'payment_confirmed': (
        'Payment Confirmed - {gym_name} Membership',
        "Payment of {currency} {amount} confirmed for your {gym_name} {plan_name} plan. "
        "Start: {start_date}, End: {end_date}. {receipt_line}",
    ),
    'payment_rejected': (
        'Payment Not Confirmed - {gym_name}',
        "Hi {name}, we could not confirm your payment for the {plan_name} plan. "
        "Please contact the front desk if you have questions.",
    ),
    'renewal_received': (
        'Membership Renewal Request Received - {gym_name}',
        "Hi {name}, your {gym_name} renewal request for {plan_name} has been received. "
        "Start: {start_date}, End: {end_date}. You'll hear from us once it is approved.",
    ),
    'renewal_rejected': (
        'Membership Renewal Request Rejected - {gym_name}',
        "Hi {name}, your {gym_name} renewal request was rejected. "
        "Please contact support if you have questions.",
    ),
    'membership_expired': (
        '{gym_name} Membership Expired',
        "Hi {name}, your {gym_name} membership expired on {end_date}. Renew here: {renewal_url} "
        "(link valid for 7 days).",
    ),
    'membership_expiring': (
        '{gym_name} Membership Expiring Soon',
        "Hi {name}, your {gym_name} membership expires in {days_left} days on {end_date}. "
        "Renew before it ends to avoid any interruption.",
    ),
}


class _SafeDict(dict):
    def __missing__(self, key):
        return ''


def render(kind: str, data: dict) -> tuple[str, str]:
    subject, body = TEMPLATES[kind]
    values = _SafeDict(data)
    return subject.format_map(values), ' '.join(body.format_map(values).split())


@dataclass(frozen=True)
class Contact:
    name: str
    email: str | None = None
    phone: str | None = None

    @classmethod
    def from_member(cls, member) -> "Contact":
        return cls(name=member.name, email=member.email, phone=member.phone)


class NotificationSink:
    def send(self, contact: Contact, kind: str, data: dict) -> str:
        raise NotImplementedError


class NullSink(NotificationSink):
    def send(self, contact, kind, data):
        logger.debug('notification %s for %s skipped: no channels configured', kind, contact.name)
        return SKIPPED


class MessageDispatcher(NotificationSink):
    """Email + WhatsApp delivery. A message counts as sent if any channel took it."""

    def __init__(self, settings, http=None, twilio_client=None, smtp_factory=smtplib.SMTP):
        self.settings = settings
        self.http = http or requests.Session()
        self.smtp_factory = smtp_factory
        if twilio_client is None and settings.twilio_sid and settings.twilio_auth:
            twilio_client = Client(settings.twilio_sid, settings.twilio_auth)
        self.twilio = twilio_client

    @property
    def email_enabled(self) -> bool:
        s = self.settings
        return bool(s.smtp_host and s.mail_from)

    @property
    def whatsapp_enabled(self) -> bool:
        s = self.settings
        return bool(self.twilio or (s.whatsapp_token and s.whatsapp_phone_number_id))

    def send(self, contact, kind, data):
        try:
            payload = {'gym_name': self.settings.gym_name, 'currency': self.settings.currency, 'name': contact.name}
            payload.update(data or {})
            subject, text = render(kind, payload)
        except KeyError:
            logger.error('unknown notification kind %r', kind)
            return FAILED

        results = []
        if self.email_enabled and contact.email:
            results.append(self._deliver('email', self.send_email, contact.email, subject, text))
        if self.whatsapp_enabled and contact.phone:
            phone = normalize_phone(contact.phone, self.settings.default_country_code)
            if phone:
                results.append(self._deliver('whatsapp', self.send_whatsapp, phone, text))
            else:
                logger.warning('invalid phone for WhatsApp: %r', contact.phone)

        if not results:
            return SKIPPED
        return OK if any(results) else FAILED

    def _deliver(self, channel, fn, *args) -> bool:
        try:
            fn(*args)
            return True
        except Exception:
            logger.exception('%s delivery failed', channel)
            return False

    def send_email(self, to_email: str, subject: str, message: str) -> None:
        s = self.settings
        msg = EmailMessage()
        msg['From'] = s.mail_from
        msg['To'] = to_email
        msg['Subject'] = subject
        msg.set_content(message)
        server = self.smtp_factory(s.smtp_host, s.smtp_port, timeout=20)
        try:
            server.starttls()
            if s.smtp_username and s.smtp_password:
                server.login(s.smtp_username, s.smtp_password)
            server.send_message(msg)
        finally:
            server.quit()

    def send_whatsapp(self, to_phone: str, text: str) -> None:
        if self.twilio:
            self.twilio.messages.create(
                body=text,
                from_=self.settings.twilio_whatsapp_from,
                to=f"whatsapp:+{to_phone}",
            )
            return
        s = self.settings
        url = f"https://graph.facebook.com/v20.0/{s.whatsapp_phone_number_id}/messages"
        headers = {'Authorization': f'Bearer {s.whatsapp_token}', 'Content-Type': 'application/json'}
        payload = {'messaging_product': 'whatsapp', 'to': to_phone, 'type': 'text',
                   'text': {'preview_url': False, 'body': text}}
        r = self.http.post(url, headers=headers, json=payload, timeout=20)
        if not 200 <= r.status_code < 300:
            raise RuntimeError(f"WhatsApp send failed: {r.status_code}: {r.text[:200]}")


def build_notifier(settings) -> NotificationSink:
    dispatcher = MessageDispatcher(settings)
    if dispatcher.email_enabled or dispatcher.whatsapp_enabled:
        return dispatcher
    logger.info('no email or WhatsApp credentials configured; notifications disabled')
    return NullSink()


def notify(sink: NotificationSink, member, kind: str, data: dict) -> str:
    """Send through `sink`, treating even a misbehaving sink as non-fatal."""
    try:
        result = sink.send(Contact.from_member(member), kind, data)
    except Exception:
        logger.exception('notification %s for member %s raised', kind, member.id)
        return FAILED
    if result == FAILED:
        logger.warning('notification %s for member %s failed', kind, member.id)
    return result
