"""Messaging channel configuration (owned by tenant settings, read-only here)."""
from apps.dispatch import db
from apps.dispatch.utils.time import utc_now


class MessagingChannel(db.Model):
    __tablename__ = 'messaging_channels'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False)
    channel_type = db.Column(db.String(20), nullable=False, default='whatsapp')
    sender_identity = db.Column(db.String(64), nullable=False)  # E.164 sender number
    credential_ref = db.Column(db.String(128), nullable=True)  # provider account SID
    status = db.Column(db.String(20), nullable=False, default='active')  # active | inactive
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'channel_type', name='uq_messaging_channels_tenant_type'),
    )

    @property
    def is_active(self) -> bool:
        return (self.status or '').lower() == 'active'
