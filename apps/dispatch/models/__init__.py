"""
Ops Notify - Database Models
Import all models here for Flask-Migrate to detect them
"""
# Import all models to register them with SQLAlchemy
from .channel import MessagingChannel
from .preference import RecipientPreference
from .employee import Employee
from .template import MessageTemplate
from .message import OutboundMessage, MessageEvent, MessageStatus, TransitionError, assert_transition

__all__ = [
    'MessagingChannel',
    'RecipientPreference',
    'Employee',
    'MessageTemplate',
    'OutboundMessage',
    'MessageEvent',
    'MessageStatus',
    'TransitionError',
    'assert_transition',
]
