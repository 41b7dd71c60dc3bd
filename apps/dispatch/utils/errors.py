"""Dispatch error taxonomy.

Every error carries a machine-readable ``code`` the caller can act on and
the HTTP status the API layer answers with. Provider delivery failures are
not exceptions: they are recorded on the message row (see ``dispatcher``).
"""


class DispatchError(Exception):
    """Base exception for dispatch errors with safe client messages."""

    status_code = 500
    default_code = 'INTERNAL'

    def __init__(self, code: str = None, message: str = None, status_code: int = None):
        self.code = code or self.default_code
        self.message = message or self.code.replace('_', ' ').capitalize()
        if status_code is not None:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self):
        return {'error': self.message, 'code': self.code}


class PolicyViolation(DispatchError):
    """Recipient policy denied the send (opt-in, quiet hours, daily cap)."""

    status_code = 400

    MESSAGES = {
        'NOT_OPTED_IN': 'Recipient has not opted in to messaging',
        'QUIET_HOURS': 'Message blocked: quiet hours active',
        'THROTTLED': 'Daily message limit reached',
    }

    def __init__(self, code: str):
        status = 429 if code == 'THROTTLED' else 400
        super().__init__(code, self.MESSAGES.get(code), status)


class ConfigurationError(DispatchError):
    """Tenant configuration is missing (channel, approved template)."""

    status_code = 400

    MESSAGES = {
        'NO_CHANNEL': 'No active messaging channel configured',
        'TEMPLATE_NOT_FOUND': 'Template not found or not approved',
    }

    def __init__(self, code: str, message: str = None):
        super().__init__(code, message or self.MESSAGES.get(code))


class StoreError(DispatchError):
    """Message store write failed; surfaced to callers as an internal error."""

    status_code = 500

    def __init__(self, message: str = 'Message store unavailable'):
        super().__init__('INTERNAL', message)
