"""Outbound message log and its append-only event trail.

``OutboundMessage.status`` follows a one-way state machine:

    queued -> sent
    queued -> failed

Rows are only written through ``apps.dispatch.utils.message_store``.
"""
from __future__ import annotations

from enum import Enum

from apps.dispatch import db
from apps.dispatch.utils.time import utc_now


class MessageStatus(str, Enum):
    QUEUED = 'queued'
    SENT = 'sent'
    FAILED = 'failed'


ALLOWED_TRANSITIONS = {
    (MessageStatus.QUEUED, MessageStatus.SENT),
    (MessageStatus.QUEUED, MessageStatus.FAILED),
}


class TransitionError(Exception):
    """Raised when a status change is not part of the state machine."""

    def __init__(self, current, target):
        super().__init__(f"Invalid message status transition: {current} -> {target}")
        self.current = current
        self.target = target


def assert_transition(current, target) -> MessageStatus:
    """Validate ``current -> target`` and return the target status."""
    try:
        current_status = MessageStatus(current)
        target_status = MessageStatus(target)
    except ValueError:
        raise TransitionError(current, target)
    if (current_status, target_status) not in ALLOWED_TRANSITIONS:
        raise TransitionError(current_status.value, target_status.value)
    return target_status


class OutboundMessage(db.Model):
    __tablename__ = 'outbound_messages'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False)
    recipient_id = db.Column(db.Integer, nullable=False)
    channel = db.Column(db.String(20), nullable=False, default='whatsapp')
    template_id = db.Column(db.Integer, db.ForeignKey('message_templates.id'), nullable=True)
    event_type = db.Column(db.String(100), nullable=False, default='manual')
    event_ref_id = db.Column(db.String(100), nullable=True)
    recipient_address = db.Column(db.String(32), nullable=False)
    variables = db.Column(db.JSON, nullable=True)
    idempotency_key = db.Column(db.String(255), nullable=False, unique=True)
    status = db.Column(db.String(20), nullable=False, default=MessageStatus.QUEUED.value)
    provider_message_id = db.Column(db.String(64), nullable=True)
    error_code = db.Column(db.String(32), nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime, nullable=True)
    failed_at = db.Column(db.DateTime, nullable=True)
    next_retry_at = db.Column(db.DateTime, nullable=True)
    scheduled_for = db.Column(db.DateTime, nullable=True)
    # Incremented by the external retry sweep only
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    template = db.relationship('MessageTemplate')
    events = db.relationship(
        'MessageEvent',
        backref='message',
        lazy='dynamic',
        order_by='MessageEvent.id',
    )

    __table_args__ = (
        db.Index('ix_outbound_messages_recipient_created', 'tenant_id', 'recipient_id', 'created_at'),
        db.Index('ix_outbound_messages_status_retry', 'status', 'next_retry_at'),
        db.Index('ix_outbound_messages_provider_id', 'provider_message_id'),
    )

    def to_dict(self, include_events: bool = False):
        """Serialize message (for API responses/diagnostics)."""
        data = {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'recipient_id': self.recipient_id,
            'channel': self.channel,
            'template_id': self.template_id,
            'event_type': self.event_type,
            'event_ref_id': self.event_ref_id,
            'variables': self.variables,
            'idempotency_key': self.idempotency_key,
            'status': self.status,
            'provider_message_id': self.provider_message_id,
            'error_code': self.error_code,
            'error_message': self.error_message,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
            'failed_at': self.failed_at.isoformat() if self.failed_at else None,
            'next_retry_at': self.next_retry_at.isoformat() if self.next_retry_at else None,
            'scheduled_for': self.scheduled_for.isoformat() if self.scheduled_for else None,
            'retry_count': self.retry_count,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_events:
            data['events'] = [e.to_dict() for e in self.events]
        return data


class MessageEvent(db.Model):
    __tablename__ = 'message_events'

    id = db.Column(db.Integer, primary_key=True)
    message_id = db.Column(db.Integer, db.ForeignKey('outbound_messages.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # message status when recorded
    provider_status = db.Column(db.String(32), nullable=True)  # e.g. delivered, read
    raw_provider_payload = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        db.Index('ix_message_events_message', 'message_id'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'message_id': self.message_id,
            'status': self.status,
            'provider_status': self.provider_status,
            'raw_provider_payload': self.raw_provider_payload,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
