"""Minimal employee directory row used to resolve location-scoped broadcasts."""
from apps.dispatch import db


class Employee(db.Model):
    __tablename__ = 'employees'

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(db.Integer, nullable=False)
    location_id = db.Column(db.Integer, nullable=True)

    __table_args__ = (
        db.Index('ix_employees_tenant_location', 'tenant_id', 'location_id'),
    )
