"""Single-recipient dispatch.

``send_one`` runs the whole pipeline for one logical event:

  1. active channel for the tenant
  2. recipient policy (opt-in, quiet hours, daily cap)
  3. latest approved template
  4. idempotent message creation (at most one row per key)
  5. content rendering
  6. provider call and terminal status transition

Policy and configuration problems raise before any row exists. Provider
failures are recorded on the row (``failed`` + ``next_retry_at``) and
returned, not raised.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from flask import current_app

from apps.dispatch.models.channel import MessagingChannel
from apps.dispatch.models.message import MessageStatus
from apps.dispatch.models.preference import RecipientPreference
from apps.dispatch.models.template import MessageTemplate
from apps.dispatch.utils import message_store, policy
from apps.dispatch.utils.errors import ConfigurationError, PolicyViolation
from apps.dispatch.utils.idempotency import build_idempotency_key
from apps.dispatch.utils.provider_client import ProviderResult, mask_number
from apps.dispatch.utils.templating import OutboundContent, build_content
from apps.dispatch.utils.time import (
    reference_day,
    reference_day_start_utc,
    to_reference,
    utc_now,
)


logger = logging.getLogger(__name__)

DEFAULT_CHANNEL_TYPE = 'whatsapp'
DEFAULT_RETRY_BACKOFF_SECONDS = 60


@dataclass
class DispatchOutcome:
    message_id: int
    status: str
    provider_message_id: Optional[str] = None
    duplicate: bool = False
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.status == MessageStatus.FAILED.value and not self.duplicate

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message_id': self.message_id,
            'provider_message_id': self.provider_message_id,
            'status': self.status,
            'duplicate': self.duplicate,
        }


def config_value(name: str, default):
    value = current_app.config.get(name)
    return default if value is None else value


def reference_timezone() -> str:
    return config_value('DISPATCH_TIMEZONE', 'UTC')


def retry_at(now: datetime) -> datetime:
    """Fixed single-step backoff for the external retry sweep."""
    backoff = int(config_value('DISPATCH_RETRY_BACKOFF_SECONDS', DEFAULT_RETRY_BACKOFF_SECONDS))
    return now + timedelta(seconds=backoff)


def get_active_channel(tenant_id: int) -> MessagingChannel:
    channel_type = config_value('DISPATCH_CHANNEL_TYPE', DEFAULT_CHANNEL_TYPE)
    channel = MessagingChannel.query.filter_by(
        tenant_id=tenant_id,
        channel_type=channel_type,
        status='active',
    ).first()
    if not channel:
        raise ConfigurationError('NO_CHANNEL')
    return channel


def check_policy(tenant_id: int, recipient_id: int, now: datetime) -> RecipientPreference:
    """Return the recipient's preference or raise ``PolicyViolation``."""
    tz_name = reference_timezone()
    preference = RecipientPreference.query.filter_by(
        tenant_id=tenant_id,
        recipient_id=recipient_id,
    ).first()

    sent_today = 0
    if policy.is_opted_in(preference):
        sent_today = message_store.count_created_since(
            tenant_id,
            recipient_id,
            reference_day_start_utc(now, tz_name),
        )

    decision = policy.evaluate(
        preference,
        sent_today,
        to_reference(now, tz_name),
        default_max_per_day=int(config_value('DISPATCH_DEFAULT_MAX_PER_DAY', policy.DEFAULT_MAX_PER_DAY)),
    )
    if not decision.allowed:
        logger.info(
            "dispatch.policy.denied tenant=%s recipient=%s reason=%s",
            tenant_id,
            recipient_id,
            decision.reason,
        )
        raise PolicyViolation(decision.reason)
    return preference


def record_result(message_id: int, result: ProviderResult, now: datetime | None = None) -> str:
    """Apply a provider result to the row and return the resulting status."""
    now = now or utc_now()
    if result.ok:
        target = MessageStatus.SENT.value
        applied = message_store.transition_to_sent(message_id, result.provider_message_id, result.raw)
    else:
        target = MessageStatus.FAILED.value
        applied = message_store.transition_to_failed(
            message_id,
            result.error_code,
            result.error_message or 'Provider API error',
            retry_at(now),
            result.raw,
        )
    if applied:
        return target

    # Another writer already moved the row; report what is stored.
    current = message_store.get_status(message_id)
    logger.warning("dispatch.record.not_applied message=%s target=%s current=%s", message_id, target, current)
    return current or target


def call_provider(provider, channel, message, content: OutboundContent) -> ProviderResult:
    """Invoke the provider; an unexpected client exception becomes a failure result."""
    try:
        return provider.send(channel, message, content)
    except Exception as exc:
        logger.exception("dispatch.provider.unexpected message=%s", message.id)
        return ProviderResult.failure(None, f"{type(exc).__name__}: {exc}"[:200])


def send_one(
    provider,
    tenant_id: int,
    recipient_id: int,
    template_name: str,
    variables: Dict[str, Any] | None = None,
    event_type: str | None = None,
    event_ref_id: str | None = None,
    now: datetime | None = None,
) -> DispatchOutcome:
    """Send one templated message to one recipient, at most once per event per day."""
    now = now or utc_now()
    variables = variables or {}

    channel = get_active_channel(tenant_id)
    preference = check_policy(tenant_id, recipient_id, now)

    template = MessageTemplate.latest_approved(tenant_id, template_name)
    if not template:
        raise ConfigurationError(
            'TEMPLATE_NOT_FOUND',
            f"Template '{template_name}' not found or not approved",
        )

    key = build_idempotency_key(event_type, event_ref_id, recipient_id, reference_day(now, reference_timezone()))
    message_id, created = message_store.create_if_absent(
        tenant_id=tenant_id,
        recipient_id=recipient_id,
        channel=channel.channel_type,
        template_id=template.id,
        event_type=event_type or 'manual',
        event_ref_id=event_ref_id,
        recipient_address=preference.address,
        variables=variables,
        idempotency_key=key,
    )
    message = message_store.get_message(message_id)

    if not created:
        logger.info("dispatch.send.duplicate key=%s message=%s status=%s", key, message_id, message.status)
        return DispatchOutcome(
            message_id=message_id,
            status=message.status,
            provider_message_id=message.provider_message_id,
            duplicate=True,
        )

    content = build_content(template, variables)
    result = call_provider(provider, channel, message, content)
    status = record_result(message_id, result, now)

    if result.ok:
        logger.info(
            "dispatch.send.sent message=%s to=%s sid=%s",
            message_id,
            mask_number(preference.address),
            result.provider_message_id,
        )
    else:
        logger.warning(
            "dispatch.send.failed message=%s to=%s code=%s",
            message_id,
            mask_number(preference.address),
            result.error_code,
        )

    return DispatchOutcome(
        message_id=message_id,
        status=status,
        provider_message_id=result.provider_message_id,
        error_code=result.error_code,
        error_message=result.error_message,
    )
