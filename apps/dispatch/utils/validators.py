"""Request payload validation for the dispatch API."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

VariableValue = Union[str, int, float, bool]

MAX_VARIABLES = 50
MAX_VARIABLE_LENGTH = 1024


class ValidationError(Exception):
    """Raised when a request payload is malformed."""

    code = 'INVALID_REQUEST'
    status_code = 400

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self):
        data = {'error': self.message, 'code': self.code}
        if self.field:
            data['field'] = self.field
        return data


def validate_required_fields(data: Dict[str, Any], fields: List[str]) -> None:
    missing = [f for f in fields if data.get(f) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing[0])


def validate_int(value: Any, field: str) -> int:
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", field)
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field)


def validate_optional_str(value: Any, field: str, max_length: int = 100) -> Optional[str]:
    if value is None or value == '':
        return None
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise ValidationError(f"{field} must be a string", field)
    value = str(value).strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} is too long", field)
    return value or None


def validate_variables(raw: Any) -> Dict[str, VariableValue]:
    """Return a variables map restricted to str/int/float/bool values."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValidationError('variables must be an object', 'variables')
    if len(raw) > MAX_VARIABLES:
        raise ValidationError('Too many variables', 'variables')
    cleaned: Dict[str, VariableValue] = {}
    for key, value in raw.items():
        if not isinstance(key, str) or not key.strip():
            raise ValidationError('Variable names must be non-empty strings', 'variables')
        if not isinstance(value, (str, int, float, bool)):
            raise ValidationError(f"Variable '{key}' must be a string, number or boolean", 'variables')
        if isinstance(value, str) and len(value) > MAX_VARIABLE_LENGTH:
            raise ValidationError(f"Variable '{key}' is too long", 'variables')
        cleaned[key] = value
    return cleaned


def _int_list(raw: Any, field: str) -> List[int]:
    if raw is None:
        return []
    if not isinstance(raw, (list, tuple)):
        raise ValidationError(f"{field} must be a list", field)
    return [validate_int(v, field) for v in raw]


def validate_scope(raw: Any) -> Dict[str, List[int]]:
    """Normalize a broadcast scope to ``{'location_ids': [...], 'employee_ids': [...]}``."""
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValidationError('scope must be an object', 'scope')
    return {
        'location_ids': _int_list(raw.get('location_ids'), 'scope.location_ids'),
        'employee_ids': _int_list(raw.get('employee_ids'), 'scope.employee_ids'),
    }


def parse_datetime(value: Any, field: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into naive UTC."""
    if value in (None, ''):
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 timestamp", field)
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 timestamp", field)
    if parsed.tzinfo:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
