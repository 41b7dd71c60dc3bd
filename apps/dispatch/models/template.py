"""Versioned message templates."""
from apps.dispatch import db
from apps.dispatch.utils.time import utc_now


class MessageTemplate(db.Model):
    __tablename__ = 'message_templates'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    approval_status = db.Column(db.String(20), nullable=False, default='draft')  # draft | approved
    body = db.Column(db.Text, nullable=True)
    provider_template_id = db.Column(db.String(64), nullable=True)  # provider content SID
    created_at = db.Column(db.DateTime, default=utc_now, nullable=False)

    __table_args__ = (
        db.UniqueConstraint('tenant_id', 'name', 'version', name='uq_message_templates_name_version'),
    )

    @classmethod
    def latest_approved(cls, tenant_id: int, name: str):
        """Highest approved version of ``name`` for the tenant, or None."""
        return cls.query.filter_by(
            tenant_id=tenant_id,
            name=name,
            approval_status='approved',
        ).order_by(cls.version.desc()).first()
