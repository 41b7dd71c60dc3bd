"""
Broadcast fan-out: recipient scoping, batched creation, isolation, pacing.
"""
from datetime import datetime

import pytest

from apps.dispatch.models import OutboundMessage
from apps.dispatch.tests.factories import FakeProvider, phone, seed_channel, seed_recipient, seed_template
from apps.dispatch.utils import message_store
from apps.dispatch.utils.broadcast import broadcast, resolve_recipients
from apps.dispatch.utils.errors import ConfigurationError, StoreError
from apps.dispatch.utils.rate_limit import OutboundThrottle


def _seed_recipients(count, location_for=lambda rid: None, **overrides):
    for rid in range(1, count + 1):
        seed_recipient(rid, location_id=location_for(rid), **overrides)


def test_fan_out_sends_to_every_recipient(app):
    seed_channel()
    template = seed_template(body='Hello {{name}}')
    _seed_recipients(5)
    fake = FakeProvider()

    summary = broadcast(fake, tenant_id=1, template_id=template.id, variables={'name': 'team'})

    assert summary.total_recipients == 5
    assert summary.inserted == 5
    assert summary.sent == 5
    assert summary.failed == summary.errors == summary.deferred == 0
    assert sorted(c['to'] for c in fake.calls) == [phone(i) for i in range(1, 6)]
    assert {c['content'].body for c in fake.calls} == {'Hello team'}
    assert {m.event_type for m in OutboundMessage.query.all()} == {'announcement'}


def test_rows_are_created_in_batches(app, monkeypatch):
    seed_channel()
    template = seed_template()
    _seed_recipients(120)

    sizes = []
    original = message_store.create_batch

    def spy(rows):
        sizes.append(len(rows))
        return original(rows)

    monkeypatch.setattr(message_store, 'create_batch', spy)
    summary = broadcast(FakeProvider(), tenant_id=1, template_id=template.id)

    assert sizes == [50, 50, 20]
    assert summary.inserted == 120
    assert summary.sent == 120
    assert OutboundMessage.query.count() == 120


def test_failed_batch_does_not_affect_others(app, monkeypatch):
    seed_channel()
    template = seed_template()
    _seed_recipients(120)

    calls = {'n': 0}
    original = message_store.create_batch

    def flaky(rows):
        calls['n'] += 1
        if calls['n'] == 2:
            raise StoreError('Failed to queue message batch')
        return original(rows)

    monkeypatch.setattr(message_store, 'create_batch', flaky)
    fake = FakeProvider()
    summary = broadcast(fake, tenant_id=1, template_id=template.id)

    assert summary.errors == 50
    assert summary.inserted == 70
    assert summary.sent == 70
    assert len(fake.calls) == 70
    assert OutboundMessage.query.count() == 70


def test_one_recipient_failure_is_isolated(app):
    seed_channel()
    template = seed_template()
    _seed_recipients(6)
    fake = FakeProvider(fail_for={phone(3)}, raise_for={phone(5)})

    summary = broadcast(fake, tenant_id=1, template_id=template.id)

    assert summary.sent == 4
    assert summary.failed == 2
    statuses = {m.recipient_id: m.status for m in OutboundMessage.query.all()}
    assert statuses[3] == 'failed'
    assert statuses[5] == 'failed'
    assert sorted(rid for rid, status in statuses.items() if status == 'sent') == [1, 2, 4, 6]


def test_location_scope(app):
    seed_channel()
    template = seed_template()
    _seed_recipients(30, location_for=lambda rid: 1 if rid <= 10 else 2)
    fake = FakeProvider()

    summary = broadcast(fake, tenant_id=1, template_id=template.id, scope={'location_ids': [1]})

    assert summary.total_recipients == 10
    assert sorted(m.recipient_id for m in OutboundMessage.query.all()) == list(range(1, 11))


def test_employee_scope_and_opt_out(app):
    seed_channel()
    template = seed_template()
    _seed_recipients(4)
    seed_recipient(5, opt_in=False)
    seed_recipient(6, opted_out_at=datetime(2024, 1, 1))

    recipients = resolve_recipients(1, {'employee_ids': [2, 4, 5, 6]})
    assert [r.recipient_id for r in recipients] == [2, 4]

    summary = broadcast(FakeProvider(), tenant_id=1, template_id=template.id)
    assert summary.total_recipients == 4


def test_other_tenants_are_excluded(app):
    seed_channel()
    template = seed_template()
    seed_recipient(1)
    seed_recipient(2, tenant_id=2)

    assert [r.recipient_id for r in resolve_recipients(1)] == [1]


def test_scheduled_broadcast_only_queues(app):
    template = seed_template()
    _seed_recipients(3)
    fake = FakeProvider()
    when = datetime(2030, 1, 1, 9, 0)

    summary = broadcast(fake, tenant_id=1, template_id=template.id, scheduled_for=when)

    assert summary.scheduled is True
    assert summary.inserted == 3
    assert summary.sent == 0
    assert fake.calls == []
    messages = OutboundMessage.query.all()
    assert {m.status for m in messages} == {'queued'}
    assert {m.scheduled_for for m in messages} == {when}


def test_rerun_reports_duplicates(app):
    seed_channel()
    template = seed_template()
    _seed_recipients(3)
    fake = FakeProvider()
    now = datetime(2024, 5, 1, 12, 0)

    broadcast(fake, tenant_id=1, template_id=template.id, now=now)
    again = broadcast(fake, tenant_id=1, template_id=template.id, now=now)

    assert again.inserted == 0
    assert again.duplicates == 3
    assert again.errors == 0
    assert len(fake.calls) == 3
    assert OutboundMessage.query.count() == 3


def test_unapproved_or_foreign_template_is_rejected(app):
    seed_channel()
    draft = seed_template(approval_status='draft')
    foreign = seed_template(tenant_id=2, name='other')
    _seed_recipients(2)

    for template in (draft, foreign):
        with pytest.raises(ConfigurationError) as exc:
            broadcast(FakeProvider(), tenant_id=1, template_id=template.id)
        assert exc.value.code == 'TEMPLATE_NOT_FOUND'
    assert OutboundMessage.query.count() == 0


def test_immediate_broadcast_requires_channel(app):
    template = seed_template()
    _seed_recipients(2)
    with pytest.raises(ConfigurationError) as exc:
        broadcast(FakeProvider(), tenant_id=1, template_id=template.id)
    assert exc.value.code == 'NO_CHANNEL'


def test_deadline_defers_remaining_rows(app):
    app.config['BROADCAST_MAX_SECONDS'] = 0
    seed_channel()
    template = seed_template()
    _seed_recipients(5)
    fake = FakeProvider()
    throttle = OutboundThrottle('2/minute', sleep=lambda _: None)

    summary = broadcast(fake, tenant_id=1, template_id=template.id, throttle=throttle)

    assert summary.sent == 2
    assert summary.deferred == 3
    assert len(fake.calls) == 2
    assert OutboundMessage.query.filter_by(status='queued').count() == 3


def test_broadcast_route(client, auth_headers, provider, app):
    seed_channel()
    template = seed_template()
    _seed_recipients(4, location_for=lambda rid: rid % 2)

    resp = client.post('/api/messaging/broadcast', json={
        'tenant_id': 1,
        'template_id': template.id,
        'variables': {'name': 'team'},
        'scope': {'location_ids': [1]},
    }, headers=auth_headers)

    assert resp.status_code == 200
    data = resp.get_json()
    assert data['total_recipients'] == 2
    assert data['inserted'] == 2
    assert data['sent'] == 2
    assert data['scheduled'] is False


def test_broadcast_route_validates_scope(client, auth_headers, provider, app):
    template = seed_template()
    resp = client.post('/api/messaging/broadcast', json={
        'tenant_id': 1,
        'template_id': template.id,
        'scope': {'location_ids': 'all'},
    }, headers=auth_headers)
    assert resp.status_code == 400
