"""API Routes - Import all blueprints here."""

from .messaging import messaging_bp
from .webhooks import webhooks_bp

__all__ = [
    'messaging_bp',
    'webhooks_bp',
]
