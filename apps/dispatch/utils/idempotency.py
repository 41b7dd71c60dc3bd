"""Deterministic dedup keys for logical sends."""
from __future__ import annotations

from datetime import date


def build_idempotency_key(event_type: str | None, event_ref_id: str | None, recipient_id: int, day: date) -> str:
    return f"{event_type or 'manual'}:{event_ref_id or 'none'}:{recipient_id}:{day.isoformat()}"


def build_broadcast_key(template_id: int, recipient_id: int, day: date) -> str:
    return f"broadcast:{template_id}:{recipient_id}:{day.isoformat()}"
