"""Shared test doubles and seed helpers for dispatch tests."""
from __future__ import annotations

import threading

from apps.dispatch import db
from apps.dispatch.config import Config
from apps.dispatch.models import (
    Employee,
    MessageTemplate,
    MessagingChannel,
    RecipientPreference,
)
from apps.dispatch.utils.provider_client import ProviderResult


class DispatchTestConfig(Config):
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {}
    TESTING = True
    JWT_SECRET_KEY = 'test-secret'
    RATELIMIT_ENABLED = False
    MESSAGING_PROVIDER = 'disabled'
    TWILIO_AUTH_TOKEN = ''
    DISPATCH_TIMEZONE = 'UTC'
    BROADCAST_RATE = '10000/second'
    BROADCAST_WORKERS = 4


class FakeProvider:
    """Records every send; fails for addresses listed in ``fail_for``."""

    name = 'fake'

    def __init__(self, fail_for=(), raise_for=()):
        self.fail_for = set(fail_for)
        self.raise_for = set(raise_for)
        self.calls = []
        self._lock = threading.Lock()

    def send(self, channel, message, content):
        with self._lock:
            self.calls.append({
                'message_id': message.id,
                'to': message.recipient_address,
                'sender': channel.sender_identity,
                'content': content,
            })
        if message.recipient_address in self.raise_for:
            raise RuntimeError('socket closed')
        if message.recipient_address in self.fail_for:
            return ProviderResult.failure('63016', 'Outside the allowed window', {'code': 63016})
        sid = f"SM{message.id:030d}"
        return ProviderResult.success(sid, {'sid': sid, 'status': 'queued'})


def phone(recipient_id: int) -> str:
    return f"+1555{recipient_id:07d}"


def seed_channel(tenant_id: int = 1, status: str = 'active') -> MessagingChannel:
    channel = MessagingChannel(
        tenant_id=tenant_id,
        channel_type='whatsapp',
        sender_identity='+15550000000',
        status=status,
    )
    db.session.add(channel)
    db.session.commit()
    return channel


def seed_template(tenant_id: int = 1, name: str = 'shift_reminder', version: int = 1,
                  approval_status: str = 'approved', body: str = 'Hi {{name}}, your shift is {{date}}',
                  provider_template_id: str | None = None) -> MessageTemplate:
    template = MessageTemplate(
        tenant_id=tenant_id,
        name=name,
        version=version,
        approval_status=approval_status,
        body=body,
        provider_template_id=provider_template_id,
    )
    db.session.add(template)
    db.session.commit()
    return template


def seed_recipient(recipient_id: int, tenant_id: int = 1, location_id: int | None = None,
                   **overrides) -> RecipientPreference:
    values = {
        'tenant_id': tenant_id,
        'recipient_id': recipient_id,
        'address': phone(recipient_id),
        'opt_in': True,
        'opted_out_at': None,
        'quiet_hours_start': None,
        'quiet_hours_end': None,
        'max_messages_per_day': 20,
    }
    values.update(overrides)
    pref = RecipientPreference(**values)
    db.session.add(Employee(id=recipient_id, tenant_id=tenant_id, location_id=location_id))
    db.session.add(pref)
    db.session.commit()
    return pref
