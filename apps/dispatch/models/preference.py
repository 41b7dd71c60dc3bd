"""Recipient messaging preferences (edited by recipients, read-only here)."""
from apps.dispatch import db
from apps.dispatch.utils.time import utc_now


class RecipientPreference(db.Model):
    __tablename__ = 'recipient_messaging_preferences'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False)
    recipient_id = db.Column(db.Integer, nullable=False)
    address = db.Column(db.String(32), nullable=False)  # E.164 phone
    opt_in = db.Column(db.Boolean, nullable=False, default=False)
    opted_out_at = db.Column(db.DateTime, nullable=True)
    # Local time-of-day bounds as "HH:MM"
    quiet_hours_start = db.Column(db.String(5), nullable=True)
    quiet_hours_end = db.Column(db.String(5), nullable=True)
    max_messages_per_day = db.Column(db.Integer, nullable=True, default=20)
    updated_at = db.Column(db.DateTime, default=utc_now, onupdate=utc_now, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'recipient_id', name='uq_recipient_prefs_tenant_recipient'),
        db.Index('ix_recipient_prefs_opt_in', 'tenant_id', 'opt_in'),
    )
