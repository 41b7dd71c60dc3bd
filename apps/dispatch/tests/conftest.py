"""Test setup helpers."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path for apps.dispatch imports.
PROJECT_ROOT = Path(__file__).resolve().parents[3]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from flask_jwt_extended import create_access_token  # noqa: E402

from apps.dispatch import db  # noqa: E402
from apps.dispatch.app import create_app  # noqa: E402
from apps.dispatch.tests.factories import DispatchTestConfig, FakeProvider  # noqa: E402


@pytest.fixture
def app():
    app = create_app(DispatchTestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def provider(app):
    fake = FakeProvider()
    app.extensions['messaging_provider'] = fake
    return fake


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers(app):
    token = create_access_token(identity='1', additional_claims={'tenant_id': 1})
    return {'Authorization': f'Bearer {token}'}
