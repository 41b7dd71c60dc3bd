"""Provider status callbacks.

The provider posts form-encoded delivery updates (delivered, read,
undelivered, ...). They are appended to the message's event trail; the
message status itself only ever moves through the dispatch transitions.
"""
import logging

from flask import Blueprint, Response, current_app, request
from twilio.request_validator import RequestValidator

from apps.dispatch.utils import message_store


logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('messaging_webhooks', __name__, url_prefix='/api/messaging')

EMPTY_TWIML = '<Response></Response>'


@webhooks_bp.route('/webhook', methods=['POST'])
def provider_status_callback():
    params = request.form.to_dict()

    auth_token = current_app.config.get('TWILIO_AUTH_TOKEN')
    if auth_token:
        signature = request.headers.get('X-Twilio-Signature', '')
        url = current_app.config.get('TWILIO_WEBHOOK_URL') or request.base_url
        if not signature or not RequestValidator(auth_token).validate(url, params, signature):
            logger.warning("provider.webhook.invalid_signature present=%s", bool(signature))
            return Response('Forbidden', status=403)
    else:
        logger.warning("provider.webhook.unverified: TWILIO_AUTH_TOKEN not set")

    sid = params.get('MessageSid')
    provider_status = params.get('MessageStatus') or params.get('SmsStatus')
    if sid and provider_status:
        message = message_store.record_provider_callback(sid, provider_status, params)
        if message:
            logger.info("provider.webhook.recorded message=%s status=%s", message.id, provider_status)
        else:
            logger.info("provider.webhook.unknown_sid sid=%s", sid)

    return Response(EMPTY_TWIML, status=200, mimetype='text/xml')
