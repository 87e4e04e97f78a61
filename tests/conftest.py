"""Shared fixtures for the quiz backend tests."""

import os
import tempfile

import pytest

# app.py creates its database on import, so point it somewhere disposable first
os.environ.setdefault('QUIZ_DATABASE', os.path.join(tempfile.mkdtemp(), 'import.db'))
os.environ['PAYCHANGU_SECRET_KEY'] = ''

import app as quiz_app  # noqa: E402
import resend  # noqa: E402


PASSWORD = 'secret123'


# ---------------------------------------------------------------------------
# Fixture: Flask app on a fresh SQLite file
# ---------------------------------------------------------------------------

@pytest.fixture
def flask_app(tmp_path, monkeypatch):
    monkeypatch.setitem(quiz_app.app.config, 'DATABASE', str(tmp_path / 'quiz.db'))
    monkeypatch.setitem(quiz_app.app.config, 'TESTING', True)
    monkeypatch.setitem(quiz_app.app.config, 'PAYCHANGU_SECRET_KEY', '')
    monkeypatch.setitem(quiz_app.app.config, 'MAIL_USERNAME', None)
    monkeypatch.setattr(resend, 'api_key', None)
    quiz_app.init_db()
    return quiz_app.app


@pytest.fixture
def client(flask_app):
    return flask_app.test_client()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def register(client, email, password=PASSWORD, username=None):
    payload = {'email': email, 'password': password}
    if username:
        payload['username'] = username
    return client.post('/api/auth/register', json=payload)


def auth_headers(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def admin(client):
    """Registered admin: dict with user, token and refreshToken."""
    resp = register(client, 'boss@admin.com', username='boss')
    assert resp.status_code == 200
    return resp.get_json()


@pytest.fixture
def player(client):
    resp = register(client, 'player@example.com', username='player')
    assert resp.status_code == 200
    return resp.get_json()


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin['token'])


@pytest.fixture
def player_headers(player):
    return auth_headers(player['token'])


@pytest.fixture
def make_season(client, admin_headers):
    def _make(**overrides):
        payload = {
            'name': 'Season',
            'start_date': '2026-01-01',
            'end_date': '2026-12-31',
            'is_active': True,
            'minimum_score_percentage': 50,
        }
        payload.update(overrides)
        resp = client.post('/api/admin/seasons', json=payload, headers=admin_headers)
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()
    return _make


@pytest.fixture
def add_question(client, admin_headers):
    def _add(season_id, text, answer, wrong=('Wrong A', 'Wrong B'), time_limit=30):
        resp = client.post(
            f'/api/admin/seasons/{season_id}/questions',
            json={
                'question_text': text,
                'options': [answer, *wrong],
                'correct_answer': answer,
                'category': 'cars',
                'difficulty': 'easy',
                'time_limit': time_limit,
            },
            headers=admin_headers,
        )
        assert resp.status_code == 201, resp.get_json()
        return resp.get_json()['question']
    return _add
