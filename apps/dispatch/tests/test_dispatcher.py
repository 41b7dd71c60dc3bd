"""
Single-recipient dispatch: API route and send_one pipeline.
"""
import threading
from datetime import datetime

import pytest

from apps.dispatch import db
from apps.dispatch.app import create_app
from apps.dispatch.models import MessageEvent, OutboundMessage
from apps.dispatch.tests.factories import (
    DispatchTestConfig,
    FakeProvider,
    phone,
    seed_channel,
    seed_recipient,
    seed_template,
)
from apps.dispatch.utils import message_store
from apps.dispatch.utils.dispatcher import record_result, send_one
from apps.dispatch.utils.errors import ConfigurationError, PolicyViolation
from apps.dispatch.utils.provider_client import ProviderResult


def _send(client, headers, **overrides):
    payload = {
        'tenant_id': 1,
        'recipient_id': 1,
        'template_name': 'shift_reminder',
        'variables': {'name': 'Ana', 'date': '2024-05-01'},
        'event_type': 'shift_reminder',
        'event_ref_id': 'shift-42',
    }
    payload.update(overrides)
    return client.post('/api/messaging/send', json=payload, headers=headers)


@pytest.fixture
def ready(app):
    seed_channel()
    seed_template()
    seed_recipient(1)


def test_send_happy_path(client, auth_headers, provider, ready):
    resp = _send(client, auth_headers)
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['status'] == 'sent'
    assert data['duplicate'] is False
    assert data['provider_message_id'] == f"SM{data['message_id']:030d}"

    assert len(provider.calls) == 1
    call = provider.calls[0]
    assert call['to'] == phone(1)
    assert call['sender'] == '+15550000000'
    assert call['content'].body == 'Hi Ana, your shift is 2024-05-01'

    db.session.expire_all()
    message = db.session.get(OutboundMessage, data['message_id'])
    assert message.status == 'sent'
    assert message.idempotency_key.startswith('shift_reminder:shift-42:1:')
    assert MessageEvent.query.filter_by(message_id=message.id).count() == 1


def test_duplicate_event_sends_once(client, auth_headers, provider, ready):
    first = _send(client, auth_headers).get_json()
    second = _send(client, auth_headers)

    assert second.status_code == 200
    data = second.get_json()
    assert data['duplicate'] is True
    assert data['message_id'] == first['message_id']
    assert data['status'] == 'sent'
    assert len(provider.calls) == 1
    assert OutboundMessage.query.count() == 1


def test_not_opted_in_creates_no_row(client, auth_headers, provider, app):
    seed_channel()
    seed_template()
    seed_recipient(1, opt_in=False)

    resp = _send(client, auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'NOT_OPTED_IN'
    assert OutboundMessage.query.count() == 0
    assert provider.calls == []


def test_missing_preference_is_not_opted_in(client, auth_headers, provider, app):
    seed_channel()
    seed_template()

    resp = _send(client, auth_headers, recipient_id=99)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'NOT_OPTED_IN'


def test_no_active_channel(client, auth_headers, provider, app):
    seed_channel(status='inactive')
    seed_template()
    seed_recipient(1)

    resp = _send(client, auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'NO_CHANNEL'
    assert OutboundMessage.query.count() == 0


def test_unknown_or_unapproved_template(client, auth_headers, provider, app):
    seed_channel()
    seed_template(approval_status='draft')
    seed_recipient(1)

    resp = _send(client, auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'TEMPLATE_NOT_FOUND'
    assert OutboundMessage.query.count() == 0


def test_highest_approved_version_wins(client, auth_headers, provider, app):
    seed_channel()
    seed_recipient(1)
    seed_template(version=1, body='v1 {{name}}')
    v2 = seed_template(version=2, body='v2 {{name}}')
    seed_template(version=3, body='v3 {{name}}', approval_status='draft')

    resp = _send(client, auth_headers)
    assert resp.status_code == 200
    assert provider.calls[0]['content'].body == 'v2 Ana'
    db.session.expire_all()
    assert db.session.get(OutboundMessage, resp.get_json()['message_id']).template_id == v2.id


def test_structured_template_forwards_variables(client, auth_headers, provider, app):
    seed_channel()
    seed_recipient(1)
    seed_template(provider_template_id='HX42')

    resp = _send(client, auth_headers)
    assert resp.status_code == 200
    content = provider.calls[0]['content']
    assert content.is_structured
    assert content.provider_template_id == 'HX42'
    assert content.variables == {'name': 'Ana', 'date': '2024-05-01'}


def test_daily_cap_throttles(client, auth_headers, provider, app):
    seed_channel()
    seed_template()
    seed_recipient(1, max_messages_per_day=2)

    assert _send(client, auth_headers, event_ref_id='a').status_code == 200
    assert _send(client, auth_headers, event_ref_id='b').status_code == 200
    resp = _send(client, auth_headers, event_ref_id='c')

    assert resp.status_code == 429
    assert resp.get_json()['code'] == 'THROTTLED'
    assert OutboundMessage.query.count() == 2


def test_provider_failure_is_recorded(client, auth_headers, app):
    fake = FakeProvider(fail_for={phone(1)})
    app.extensions['messaging_provider'] = fake
    seed_channel()
    seed_template()
    seed_recipient(1)

    resp = _send(client, auth_headers)
    assert resp.status_code == 502
    data = resp.get_json()
    assert data['code'] == 'PROVIDER_ERROR'

    db.session.expire_all()
    message = db.session.get(OutboundMessage, data['message_id'])
    assert message.status == 'failed'
    assert message.error_code == '63016'
    assert message.next_retry_at is not None
    backoff = (message.next_retry_at - message.failed_at).total_seconds()
    assert 59 <= backoff <= 61


def test_provider_exception_is_recorded_as_failure(app):
    fake = FakeProvider(raise_for={phone(1)})
    seed_channel()
    seed_template()
    seed_recipient(1)

    outcome = send_one(fake, tenant_id=1, recipient_id=1, template_name='shift_reminder', variables={'name': 'Ana'})
    assert outcome.failed
    assert outcome.error_code is None
    assert 'socket closed' in outcome.error_message

    db.session.expire_all()
    assert db.session.get(OutboundMessage, outcome.message_id).status == 'failed'


def test_quiet_hours_block_send(app):
    seed_channel()
    seed_template()
    seed_recipient(1, quiet_hours_start='22:00', quiet_hours_end='06:00')

    with pytest.raises(PolicyViolation) as exc:
        send_one(FakeProvider(), tenant_id=1, recipient_id=1, template_name='shift_reminder',
                 now=datetime(2024, 5, 1, 23, 30))
    assert exc.value.code == 'QUIET_HOURS'
    assert OutboundMessage.query.count() == 0

    outcome = send_one(FakeProvider(), tenant_id=1, recipient_id=1, template_name='shift_reminder',
                       now=datetime(2024, 5, 1, 12, 0))
    assert outcome.status == 'sent'


def test_quiet_hours_use_reference_timezone(app):
    app.config['DISPATCH_TIMEZONE'] = 'America/New_York'
    seed_channel()
    seed_template()
    seed_recipient(1, quiet_hours_start='22:00', quiet_hours_end='06:00')

    # 03:00 UTC is 23:00 the previous evening in New York (EDT)
    with pytest.raises(PolicyViolation):
        send_one(FakeProvider(), tenant_id=1, recipient_id=1, template_name='shift_reminder',
                 now=datetime(2024, 5, 2, 3, 0))


def test_missing_template_raises_configuration_error(app):
    seed_channel()
    seed_recipient(1)
    with pytest.raises(ConfigurationError) as exc:
        send_one(FakeProvider(), tenant_id=1, recipient_id=1, template_name='nope')
    assert exc.value.code == 'TEMPLATE_NOT_FOUND'


def test_invalid_variables_rejected(client, auth_headers, provider, ready):
    resp = _send(client, auth_headers, variables={'name': ['Ana']})
    assert resp.status_code == 400
    assert resp.get_json()['code'] == 'INVALID_REQUEST'
    assert OutboundMessage.query.count() == 0


def test_missing_fields_rejected(client, auth_headers, provider, ready):
    resp = client.post('/api/messaging/send', json={'tenant_id': 1}, headers=auth_headers)
    assert resp.status_code == 400
    assert resp.get_json()['field'] == 'recipient_id'


def test_other_tenant_is_forbidden(client, auth_headers, provider, ready):
    resp = _send(client, auth_headers, tenant_id=2)
    assert resp.status_code == 403
    assert resp.get_json()['code'] == 'FORBIDDEN'


def test_requires_token(client, provider, ready):
    resp = _send(client, {})
    assert resp.status_code == 401


def test_message_lookup(client, auth_headers, provider, ready):
    message_id = _send(client, auth_headers).get_json()['message_id']

    resp = client.get(f'/api/messaging/messages/{message_id}', headers=auth_headers)
    assert resp.status_code == 200
    data = resp.get_json()
    assert data['status'] == 'sent'
    assert [e['status'] for e in data['events']] == ['sent']

    assert client.get('/api/messaging/messages/9999', headers=auth_headers).status_code == 404
    other = client.get(f'/api/messaging/messages/{message_id}?tenant_id=2', headers=auth_headers)
    assert other.status_code == 403


def test_concurrent_sends_for_one_event_call_provider_once(tmp_path):
    class FileConfig(DispatchTestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'dispatch.db'}"

    app = create_app(FileConfig)
    with app.app_context():
        db.create_all()
        seed_channel()
        seed_template()
        seed_recipient(1)

    fake = FakeProvider()
    barrier = threading.Barrier(4)
    outcomes = []
    lock = threading.Lock()

    def worker():
        with app.app_context():
            barrier.wait()
            outcome = send_one(fake, tenant_id=1, recipient_id=1, template_name='shift_reminder',
                               variables={'name': 'Ana'}, event_type='shift_reminder', event_ref_id='shift-42')
            with lock:
                outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(outcomes) == 4
    assert len(fake.calls) == 1
    assert sorted(o.duplicate for o in outcomes) == [False, True, True, True]
    assert len({o.message_id for o in outcomes}) == 1
    with app.app_context():
        assert OutboundMessage.query.count() == 1
        db.drop_all()


def test_record_result_reports_stored_status_when_row_already_moved(app):
    message_id, _ = message_store.create_if_absent(
        tenant_id=1,
        recipient_id=1,
        channel='whatsapp',
        event_type='manual',
        recipient_address=phone(1),
        idempotency_key='manual:none:1:2024-05-01',
    )
    message_store.transition_to_failed(message_id, '63016', 'Outside the allowed window', None)

    status = record_result(message_id, ProviderResult.success('SM1'))

    assert status == 'failed'
    db.session.expire_all()
    assert db.session.get(OutboundMessage, message_id).provider_message_id is None
