"""Message store: the only writer of ``outbound_messages`` / ``message_events``.

Creation is atomic against the ``idempotency_key`` unique constraint: rows
are inserted with ``ON CONFLICT DO NOTHING`` (PostgreSQL, SQLite) so two
concurrent callers can never both observe "created". Status changes are a
compare-and-set from ``queued``; repeating one is a no-op.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from apps.dispatch import db
from apps.dispatch.models.message import (
    MessageEvent,
    MessageStatus,
    OutboundMessage,
    TransitionError,
    assert_transition,
)
from apps.dispatch.utils.errors import StoreError
from apps.dispatch.utils.time import utc_now


logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    'postgresql': pg_insert,
    'sqlite': sqlite_insert,
}


def _dialect_name() -> str:
    return db.session.get_bind().dialect.name


def _insert_if_absent(values: Dict[str, Any]) -> Optional[int]:
    """Insert one row; return its id, or None when the key already exists."""
    insert = _UPSERT_INSERTS.get(_dialect_name())
    if insert is not None:
        stmt = (
            insert(OutboundMessage)
            .values(**values)
            .on_conflict_do_nothing(index_elements=['idempotency_key'])
            .returning(OutboundMessage.id)
        )
        return db.session.execute(stmt).scalar_one_or_none()

    # Other dialects: rely on the unique constraint inside a SAVEPOINT.
    try:
        with db.session.begin_nested():
            row = OutboundMessage(**values)
            db.session.add(row)
        return row.id
    except IntegrityError:
        return None


def _existing_id(idempotency_key: str) -> Optional[int]:
    return db.session.query(OutboundMessage.id).filter(
        OutboundMessage.idempotency_key == idempotency_key
    ).scalar()


def create_if_absent(**values) -> Tuple[int, bool]:
    """Create a queued message unless one with the same key exists.

    Returns:
        ``(message_id, created)``. ``created`` is False when another call
        already owns the idempotency key; that caller must not send again.
    """
    values.setdefault('status', MessageStatus.QUEUED.value)
    key = values['idempotency_key']
    try:
        new_id = _insert_if_absent(values)
        if new_id is not None:
            db.session.commit()
            return new_id, True
        existing = _existing_id(key)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("message_store.create_failed key=%s: %s", key, exc)
        raise StoreError('Failed to queue message') from exc

    if existing is None:
        # Conflict reported but the row is gone; treat as a store fault.
        raise StoreError('Failed to queue message')
    return existing, False


def create_batch(rows: Iterable[Dict[str, Any]]) -> Tuple[List[int], int]:
    """Create many queued messages in one transaction.

    Returns ``(created_ids, duplicate_count)``. Any database error rolls the
    whole batch back and raises ``StoreError``.
    """
    created_ids: List[int] = []
    duplicates = 0
    try:
        for values in rows:
            values.setdefault('status', MessageStatus.QUEUED.value)
            new_id = _insert_if_absent(values)
            if new_id is None:
                duplicates += 1
            else:
                created_ids.append(new_id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("message_store.batch_failed: %s", exc)
        raise StoreError('Failed to queue message batch') from exc
    return created_ids, duplicates


def _transition(message_id: int, target: MessageStatus, changes: Dict[str, Any], raw: Any) -> bool:
    try:
        current = db.session.query(OutboundMessage.status).filter(
            OutboundMessage.id == message_id
        ).scalar()
        if current is None:
            logger.warning("message_store.transition_missing id=%s target=%s", message_id, target.value)
            return False
        try:
            assert_transition(current, target)
        except TransitionError as exc:
            logger.info("message_store.transition_ignored id=%s: %s", message_id, exc)
            db.session.rollback()
            return False

        changes = dict(changes, status=target.value, updated_at=utc_now())
        updated = OutboundMessage.query.filter(
            OutboundMessage.id == message_id,
            OutboundMessage.status == MessageStatus.QUEUED.value,
        ).update(changes, synchronize_session=False)
        if not updated:
            # Lost the race to another transition.
            db.session.rollback()
            return False

        db.session.add(MessageEvent(
            message_id=message_id,
            status=target.value,
            raw_provider_payload=raw,
        ))
        db.session.commit()
        return True
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("message_store.transition_failed id=%s target=%s: %s", message_id, target.value, exc)
        raise StoreError('Failed to update message status') from exc


def transition_to_sent(message_id: int, provider_message_id: str | None, raw: Any = None) -> bool:
    now = utc_now()
    return _transition(message_id, MessageStatus.SENT, {
        'provider_message_id': provider_message_id,
        'sent_at': now,
        'error_code': None,
        'error_message': None,
        'next_retry_at': None,
    }, raw)


def transition_to_failed(
    message_id: int,
    error_code: str | None,
    error_message: str | None,
    next_retry_at: datetime | None,
    raw: Any = None,
) -> bool:
    return _transition(message_id, MessageStatus.FAILED, {
        'error_code': (error_code or None) and str(error_code)[:32],
        'error_message': (error_message or None) and str(error_message)[:1000],
        'failed_at': utc_now(),
        'next_retry_at': next_retry_at,
    }, raw)


def record_provider_callback(provider_message_id: str, provider_status: str | None, payload: Any) -> Optional[OutboundMessage]:
    """Append a provider status callback to the message's event trail."""
    try:
        message = OutboundMessage.query.filter_by(provider_message_id=provider_message_id).first()
        if not message:
            return None
        db.session.add(MessageEvent(
            message_id=message.id,
            status=message.status,
            provider_status=(provider_status or None) and provider_status[:32],
            raw_provider_payload=payload,
        ))
        db.session.commit()
        return message
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.error("message_store.callback_failed sid=%s: %s", provider_message_id, exc)
        raise StoreError('Failed to record provider callback') from exc


def count_created_since(tenant_id: int, recipient_id: int, since: datetime) -> int:
    return db.session.query(func.count(OutboundMessage.id)).filter(
        OutboundMessage.tenant_id == tenant_id,
        OutboundMessage.recipient_id == recipient_id,
        OutboundMessage.created_at >= since,
    ).scalar() or 0


def get_message(message_id: int) -> Optional[OutboundMessage]:
    return db.session.get(OutboundMessage, message_id)


def get_status(message_id: int) -> Optional[str]:
    """Stored status read straight from the table, bypassing the session identity map."""
    return db.session.query(OutboundMessage.status).filter(
        OutboundMessage.id == message_id
    ).scalar()
