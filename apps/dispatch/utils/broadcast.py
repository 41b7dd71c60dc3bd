"""Template fan-out to many recipients.

Rows are created in fixed-size batches, each in its own transaction, so one
bad batch only costs its own rows. Unless the broadcast is scheduled, the
rows created by this call are then sent through a small worker pool paced by
``OutboundThrottle``. Workers only talk to the provider; all store writes
happen on the calling thread. Every recipient is an independent failure
domain and no ordering across recipients is guaranteed.
"""
from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from apps.dispatch.models.employee import Employee
from apps.dispatch.models.message import MessageStatus, OutboundMessage
from apps.dispatch.models.preference import RecipientPreference
from apps.dispatch.models.template import MessageTemplate
from apps.dispatch.utils import message_store
from apps.dispatch.utils.dispatcher import (
    DEFAULT_CHANNEL_TYPE,
    config_value,
    call_provider,
    get_active_channel,
    record_result,
    reference_timezone,
)
from apps.dispatch.utils.errors import ConfigurationError, StoreError
from apps.dispatch.utils.idempotency import build_broadcast_key
from apps.dispatch.utils.rate_limit import DEFAULT_RATE, OutboundThrottle
from apps.dispatch.utils.templating import build_content
from apps.dispatch.utils.time import reference_day, utc_now


logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50
DEFAULT_WORKERS = 4
DEFAULT_MAX_SECONDS = 300
BROADCAST_EVENT_TYPE = 'announcement'


@dataclass
class BroadcastSummary:
    total_recipients: int = 0
    inserted: int = 0
    errors: int = 0
    scheduled: bool = False
    duplicates: int = 0
    sent: int = 0
    failed: int = 0
    deferred: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class _ChannelRef:
    """Detached channel fields handed to worker threads."""

    channel_type: str
    sender_identity: str
    credential_ref: Optional[str]


@dataclass(frozen=True)
class _MessageRef:
    id: int
    recipient_address: str


def resolve_recipients(tenant_id: int, scope: Dict[str, List[int]] | None = None) -> List[RecipientPreference]:
    """Opted-in recipients of the tenant, narrowed by location and/or employee ids."""
    scope = scope or {}
    query = RecipientPreference.query.filter(
        RecipientPreference.tenant_id == tenant_id,
        RecipientPreference.opt_in.is_(True),
        RecipientPreference.opted_out_at.is_(None),
    )

    location_ids = scope.get('location_ids') or []
    if location_ids:
        at_locations = select(Employee.id).where(
            Employee.tenant_id == tenant_id,
            Employee.location_id.in_(location_ids),
        )
        query = query.filter(RecipientPreference.recipient_id.in_(at_locations))

    employee_ids = scope.get('employee_ids') or []
    if employee_ids:
        query = query.filter(RecipientPreference.recipient_id.in_(employee_ids))

    return query.order_by(RecipientPreference.recipient_id.asc()).all()


def _create_in_batches(rows: List[Dict[str, Any]], batch_size: int, summary: BroadcastSummary) -> List[int]:
    created_ids: List[int] = []
    for start in range(0, len(rows), batch_size):
        batch = rows[start:start + batch_size]
        try:
            ids, duplicates = message_store.create_batch(batch)
        except StoreError as exc:
            summary.errors += len(batch)
            logger.error("broadcast.batch_failed offset=%s size=%s: %s", start, len(batch), exc)
            continue
        created_ids.extend(ids)
        summary.inserted += len(ids)
        summary.duplicates += duplicates
    return created_ids


def _fan_out(provider, channel, template, message_ids: List[int], throttle: OutboundThrottle, summary: BroadcastSummary):
    messages = OutboundMessage.query.filter(
        OutboundMessage.id.in_(message_ids),
        OutboundMessage.status == MessageStatus.QUEUED.value,
    ).all()
    channel_ref = _ChannelRef(channel.channel_type, channel.sender_identity, channel.credential_ref)
    jobs = [
        (_MessageRef(m.id, m.recipient_address), build_content(template, m.variables))
        for m in messages
    ]

    workers = max(1, int(config_value('BROADCAST_WORKERS', DEFAULT_WORKERS)))
    deadline = time.time() + float(config_value('BROADCAST_MAX_SECONDS', DEFAULT_MAX_SECONDS))
    futures = {}

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='broadcast') as pool:
        for message_ref, content in jobs:
            if not throttle.acquire(key=channel_ref.sender_identity, deadline=deadline):
                logger.warning("broadcast.deadline_reached remaining=%s", len(jobs) - len(futures))
                break
            future = pool.submit(call_provider, provider, channel_ref, message_ref, content)
            futures[future] = message_ref.id

        for future in as_completed(futures):
            message_id = futures[future]
            try:
                status = record_result(message_id, future.result())
            except StoreError as exc:
                # Row stays queued for the retry sweep.
                logger.error("broadcast.record_failed message=%s: %s", message_id, exc)
                summary.deferred += 1
                continue
            if status == MessageStatus.SENT.value:
                summary.sent += 1
            else:
                summary.failed += 1

    summary.deferred += len(jobs) - len(futures)


def broadcast(
    provider,
    tenant_id: int,
    template_id: int,
    variables: Dict[str, Any] | None = None,
    scope: Dict[str, List[int]] | None = None,
    scheduled_for: datetime | None = None,
    throttle: OutboundThrottle | None = None,
    now: datetime | None = None,
) -> BroadcastSummary:
    """Queue (and unless scheduled, send) one message per eligible recipient.

    Raises ``ConfigurationError`` only when the broadcast cannot start at all;
    per-recipient problems are reported in the returned counts.
    """
    now = now or utc_now()
    variables = variables or {}

    template = MessageTemplate.query.filter_by(
        id=template_id,
        tenant_id=tenant_id,
        approval_status='approved',
    ).first()
    if not template:
        raise ConfigurationError('TEMPLATE_NOT_FOUND')

    channel = None
    if scheduled_for is None:
        channel = get_active_channel(tenant_id)
    channel_type = channel.channel_type if channel else config_value('DISPATCH_CHANNEL_TYPE', DEFAULT_CHANNEL_TYPE)

    recipients = resolve_recipients(tenant_id, scope)
    summary = BroadcastSummary(total_recipients=len(recipients), scheduled=scheduled_for is not None)
    if not recipients:
        logger.info("broadcast.no_recipients tenant=%s template=%s", tenant_id, template_id)
        return summary

    day = reference_day(now, reference_timezone())
    rows = [
        {
            'tenant_id': tenant_id,
            'recipient_id': r.recipient_id,
            'channel': channel_type,
            'template_id': template.id,
            'event_type': BROADCAST_EVENT_TYPE,
            'recipient_address': r.address,
            'variables': dict(variables),
            'idempotency_key': build_broadcast_key(template.id, r.recipient_id, day),
            'scheduled_for': scheduled_for,
        }
        for r in recipients
    ]

    batch_size = max(1, int(config_value('BROADCAST_BATCH_SIZE', DEFAULT_BATCH_SIZE)))
    created_ids = _create_in_batches(rows, batch_size, summary)
    logger.info(
        "broadcast.queued tenant=%s template=%s recipients=%s inserted=%s errors=%s duplicates=%s",
        tenant_id,
        template_id,
        summary.total_recipients,
        summary.inserted,
        summary.errors,
        summary.duplicates,
    )

    if summary.scheduled or not created_ids:
        return summary

    throttle = throttle or OutboundThrottle(config_value('BROADCAST_RATE', DEFAULT_RATE))
    _fan_out(provider, channel, template, created_ids, throttle, summary)
    logger.info(
        "broadcast.dispatched tenant=%s template=%s sent=%s failed=%s deferred=%s",
        tenant_id,
        template_id,
        summary.sent,
        summary.failed,
        summary.deferred,
    )
    return summary
