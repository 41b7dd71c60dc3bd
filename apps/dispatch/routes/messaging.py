"""Outbound messaging routes: single send, broadcast, message lookup.

All endpoints require a bearer token. When the token carries a
``tenant_id`` claim, requests for any other tenant are rejected.
"""
import logging

from flask import Blueprint, current_app, jsonify, request
from flask_jwt_extended import get_jwt, jwt_required

from apps.dispatch import limiter
from apps.dispatch.utils import message_store
from apps.dispatch.utils.broadcast import broadcast
from apps.dispatch.utils.dispatcher import send_one
from apps.dispatch.utils.security import error_404, safe_error_response
from apps.dispatch.utils.validators import (
    ValidationError,
    parse_datetime,
    validate_int,
    validate_optional_str,
    validate_required_fields,
    validate_scope,
    validate_variables,
)


logger = logging.getLogger(__name__)

messaging_bp = Blueprint('messaging', __name__, url_prefix='/api/messaging')


def _provider():
    return current_app.extensions['messaging_provider']


def _send_limit():
    return current_app.config.get('SEND_RATE_LIMIT') or '120 per minute'


def _broadcast_limit():
    return current_app.config.get('BROADCAST_RATE_LIMIT') or '10 per minute'


def _tenant_forbidden(tenant_id: int):
    """Return an error response when the token is scoped to another tenant."""
    claim = get_jwt().get('tenant_id')
    if claim is None:
        return None
    try:
        allowed = int(claim)
    except (TypeError, ValueError):
        allowed = None
    if allowed != tenant_id:
        return safe_error_response('Forbidden', status_code=403, code='FORBIDDEN', log_level='warning')
    return None


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


@messaging_bp.route('/send', methods=['POST'])
@jwt_required()
@limiter.limit(_send_limit)
def send_message():
    """Send one templated message to one recipient.

    Body: tenant_id, recipient_id, template_name, variables?, event_type?, event_ref_id?
    """
    data = _json_body()
    validate_required_fields(data, ['tenant_id', 'recipient_id', 'template_name'])
    tenant_id = validate_int(data.get('tenant_id'), 'tenant_id')
    recipient_id = validate_int(data.get('recipient_id'), 'recipient_id')
    template_name = validate_optional_str(data.get('template_name'), 'template_name')
    variables = validate_variables(data.get('variables'))
    event_type = validate_optional_str(data.get('event_type'), 'event_type')
    event_ref_id = validate_optional_str(data.get('event_ref_id'), 'event_ref_id')

    forbidden = _tenant_forbidden(tenant_id)
    if forbidden:
        return forbidden

    outcome = send_one(
        _provider(),
        tenant_id=tenant_id,
        recipient_id=recipient_id,
        template_name=template_name,
        variables=variables,
        event_type=event_type,
        event_ref_id=event_ref_id,
    )

    if outcome.failed:
        return safe_error_response(
            'Failed to send via provider',
            status_code=502,
            code='PROVIDER_ERROR',
            log_level='warning',
            extra={'message_id': outcome.message_id},
        )
    return jsonify(outcome.to_dict()), 200


@messaging_bp.route('/broadcast', methods=['POST'])
@jwt_required()
@limiter.limit(_broadcast_limit)
def send_broadcast():
    """Fan one approved template out to the scoped, opted-in recipients.

    Body: tenant_id, template_id, variables?, scope? {location_ids?, employee_ids?}, scheduled_for?
    """
    data = _json_body()
    validate_required_fields(data, ['tenant_id', 'template_id'])
    tenant_id = validate_int(data.get('tenant_id'), 'tenant_id')
    template_id = validate_int(data.get('template_id'), 'template_id')
    variables = validate_variables(data.get('variables'))
    scope = validate_scope(data.get('scope'))
    scheduled_for = parse_datetime(data.get('scheduled_for'), 'scheduled_for')

    forbidden = _tenant_forbidden(tenant_id)
    if forbidden:
        return forbidden

    summary = broadcast(
        _provider(),
        tenant_id=tenant_id,
        template_id=template_id,
        variables=variables,
        scope=scope,
        scheduled_for=scheduled_for,
    )
    return jsonify(summary.to_dict()), 200


@messaging_bp.route('/messages/<int:message_id>', methods=['GET'])
@jwt_required()
def get_message(message_id: int):
    """Return one message with its event trail."""
    claim = get_jwt().get('tenant_id')
    raw_tenant = request.args.get('tenant_id', claim)
    if raw_tenant is None:
        raise ValidationError('tenant_id is required', 'tenant_id')
    tenant_id = validate_int(raw_tenant, 'tenant_id')

    forbidden = _tenant_forbidden(tenant_id)
    if forbidden:
        return forbidden

    message = message_store.get_message(message_id)
    if not message or message.tenant_id != tenant_id:
        return error_404('Message not found')
    return jsonify(message.to_dict(include_events=True)), 200
