"""Messaging provider clients (Twilio-style HTTP API + console fallback).

Clients never raise for provider-side rejections or transport errors: every
outcome comes back as a ``ProviderResult`` so the dispatcher can record it on
the message row. There is no internal retry; failed rows carry
``next_retry_at`` for the external retry sweep.
"""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests

from apps.dispatch.utils.templating import OutboundContent


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = 'https://api.twilio.com/2010-04-01'
DEFAULT_TIMEOUT_SECONDS = 15


def mask_number(number: str) -> str:
    """Mask all but last 4 digits of a phone number."""
    digits = ''.join(ch for ch in str(number or '') if ch.isdigit())
    if not digits:
        return '***'
    if len(digits) <= 4:
        return '*' * len(digits)
    return f"{'*' * (len(digits) - 4)}{digits[-4:]}"


@dataclass
class ProviderResult:
    ok: bool
    provider_message_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, provider_message_id: str, raw: Dict[str, Any] | None = None) -> 'ProviderResult':
        return cls(True, provider_message_id=provider_message_id, raw=raw or {})

    @classmethod
    def failure(cls, error_code: str | None, error_message: str | None, raw: Dict[str, Any] | None = None) -> 'ProviderResult':
        return cls(False, error_code=error_code, error_message=error_message, raw=raw or {})


def _whatsapp_address(number: str) -> str:
    number = (number or '').strip()
    return number if number.startswith('whatsapp:') else f"whatsapp:{number}"


class TwilioProvider:
    """Send messages through the Twilio Messages API.

    Credentials are injected by the application factory; the client holds no
    process-wide state. Each thread gets its own HTTP session, since broadcast
    fan-out calls ``send`` from a worker pool.
    """

    name = 'twilio'

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip('/')
        self.timeout = timeout
        self._session = session
        self._local = threading.local()

    def http_session(self) -> requests.Session:
        """The injected session, or one owned by the calling thread."""
        if self._session is not None:
            return self._session
        session = getattr(self._local, 'session', None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session

    def build_form(self, channel, message, content: OutboundContent) -> Dict[str, str]:
        form = {
            'From': _whatsapp_address(channel.sender_identity),
            'To': _whatsapp_address(message.recipient_address),
        }
        if content.is_structured:
            form['ContentSid'] = content.provider_template_id
            if content.variables:
                form['ContentVariables'] = json.dumps(content.variables)
        else:
            form['Body'] = content.body or ''
        return form

    def send(self, channel, message, content: OutboundContent) -> ProviderResult:
        account_sid = getattr(channel, 'credential_ref', None) or self.account_sid
        if not account_sid or not self.auth_token:
            return ProviderResult.failure('NOT_CONFIGURED', 'Provider credentials not configured')

        url = f"{self.base_url}/Accounts/{account_sid}/Messages.json"
        form = self.build_form(channel, message, content)
        masked = mask_number(message.recipient_address)

        try:
            resp = self.http_session().post(
                url,
                data=form,
                auth=(account_sid, self.auth_token),
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as exc:
            logger.error("provider.twilio.network_error to=%s: %s", masked, exc)
            return ProviderResult.failure(None, str(exc)[:200] or 'Provider unreachable')

        try:
            payload = resp.json()
        except ValueError:
            payload = {'text': (resp.text or '')[:200]}
        if not isinstance(payload, dict):
            payload = {'data': payload}

        if not 200 <= resp.status_code < 300:
            code = payload.get('code') or resp.status_code
            message_text = payload.get('message') or 'Provider API error'
            logger.error(
                "provider.twilio.failed to=%s status=%s code=%s",
                masked,
                resp.status_code,
                code,
            )
            return ProviderResult.failure(str(code), message_text, payload)

        sid = payload.get('sid')
        logger.info("provider.twilio.accepted to=%s sid=%s", masked, sid)
        return ProviderResult.success(sid, payload)


class ConsoleProvider:
    """Log messages instead of sending them (local development)."""

    name = 'console'

    def send(self, channel, message, content: OutboundContent) -> ProviderResult:
        preview = content.provider_template_id or (content.body or '')[:240]
        sid = f"CONSOLE{uuid.uuid4().hex[:24]}"
        logger.info("[console provider] to=%s content=%s", mask_number(message.recipient_address), preview)
        return ProviderResult.success(sid, {'sid': sid, 'status': 'queued'})


class DisabledProvider:
    """Reject every send; rows are recorded as failed for the retry sweep."""

    name = 'disabled'

    def send(self, channel, message, content: OutboundContent) -> ProviderResult:
        return ProviderResult.failure('PROVIDER_DISABLED', 'Messaging provider is disabled')


def build_provider(config) -> Any:
    """Construct the provider selected by ``MESSAGING_PROVIDER``."""
    provider = (config.get('MESSAGING_PROVIDER') or 'disabled').lower()
    if provider == 'twilio':
        return TwilioProvider(
            account_sid=config.get('TWILIO_ACCOUNT_SID', ''),
            auth_token=config.get('TWILIO_AUTH_TOKEN', ''),
            base_url=config.get('TWILIO_BASE_URL') or DEFAULT_BASE_URL,
            timeout=float(config.get('PROVIDER_TIMEOUT_SECONDS') or DEFAULT_TIMEOUT_SECONDS),
        )
    if provider == 'console':
        return ConsoleProvider()
    if provider != 'disabled':
        logger.warning("provider.unknown: %s; messaging disabled", provider)
    return DisabledProvider()
