"""
Test configuration: repo root on sys.path, an app on in-memory SQLite,
and signed-in admin/member clients.
"""

import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app import create_app  # noqa: E402
from models import db  # noqa: E402

ADMIN_EMAIL = 'admin@barangayfarm.ph'
MEMBER_EMAIL = 'juan@barangayfarm.ph'
PASSWORD = 'secret-pass'


@pytest.fixture
def app():
    app = create_app('testing')
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


def _sign_up(client, email, name):
    response = client.post('/api/auth/register', json={'email': email, 'password': PASSWORD, 'name': name})
    assert response.status_code == 201, response.get_json()
    response = client.post('/api/auth/login', json={'email': email, 'password': PASSWORD})
    assert response.status_code == 200, response.get_json()
    return response.get_json()['data']


@pytest.fixture
def admin_headers(client):
    session = _sign_up(client, ADMIN_EMAIL, 'Kapitan Admin')
    return {'Authorization': f"Bearer {session['access_token']}"}


@pytest.fixture
def member_headers(client):
    session = _sign_up(client, MEMBER_EMAIL, 'Juan Dela Cruz')
    return {'Authorization': f"Bearer {session['access_token']}"}


@pytest.fixture
def sample_poll():
    return {
        'id': 'poll-1',
        'question': 'Which crop next season?',
        'options': [
            {'id': 'a', 'text': 'Corn', 'votes': 15},
            {'id': 'b', 'text': 'Squash', 'votes': 5},
        ],
        'total_votes': 20,
        'status': 'active',
    }
